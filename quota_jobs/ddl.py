"""Database schema DDL for the quota jobs engine."""

QUOTA_JOBS_DDL = """
CREATE TABLE indexing_jobs (
  id                  UUID PRIMARY KEY,
  owner_id            TEXT NOT NULL,
  name                TEXT,

  status              TEXT NOT NULL CHECK (status IN ('pending', 'running', 'completed', 'failed', 'cancelled')),

  total_urls          INT NOT NULL DEFAULT 0,
  processed_urls      INT NOT NULL DEFAULT 0,
  successful_urls     INT NOT NULL DEFAULT 0,
  failed_urls         INT NOT NULL DEFAULT 0,
  progress_percentage DOUBLE PRECISION NOT NULL DEFAULT 0,

  locked_by           TEXT,
  locked_at           TIMESTAMPTZ,
  error_message       TEXT,

  schedule_type       TEXT NOT NULL DEFAULT 'one-time',
  next_run_at         TIMESTAMPTZ,

  created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
  started_at          TIMESTAMPTZ,
  completed_at        TIMESTAMPTZ,
  updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),

  CHECK (processed_urls = successful_urls + failed_urls),
  CHECK (processed_urls <= total_urls)
);

CREATE INDEX idx_indexing_jobs_pending
ON indexing_jobs (created_at)
WHERE status = 'pending' AND locked_by IS NULL;

CREATE INDEX idx_indexing_jobs_owner_status
ON indexing_jobs (owner_id, status);

CREATE TABLE url_submissions (
  id             UUID PRIMARY KEY,
  job_id         UUID NOT NULL REFERENCES indexing_jobs (id) ON DELETE CASCADE,
  url            TEXT NOT NULL,
  status         TEXT NOT NULL CHECK (status IN ('pending', 'submitted', 'indexed', 'failed', 'quota_exceeded')),
  retry_count    INT NOT NULL DEFAULT 0,
  credential_id  UUID,
  error_message  TEXT,
  run_number     INT NOT NULL DEFAULT 1,
  created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
  submitted_at   TIMESTAMPTZ
);

CREATE INDEX idx_url_submissions_job_status
ON url_submissions (job_id, status, created_at);

CREATE TABLE credentials (
  id                  UUID PRIMARY KEY,
  service             TEXT NOT NULL CHECK (service IN ('indexing', 'rank_data')),
  name                TEXT,
  secret              TEXT,
  owner_id            TEXT,

  quota_limit         INT NOT NULL,
  quota_used          INT NOT NULL DEFAULT 0,
  is_active           BOOLEAN NOT NULL DEFAULT FALSE,
  health_status       TEXT NOT NULL DEFAULT 'unknown',
  deactivation_reason TEXT CHECK (deactivation_reason IN ('quota_exhausted', 'revoked')),
  quota_resets_at     TIMESTAMPTZ,
  last_used_at        TIMESTAMPTZ,

  created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_credentials_scope
ON credentials (service, owner_id, is_active, created_at);

CREATE TABLE credential_usage (
  credential_id        UUID NOT NULL REFERENCES credentials (id) ON DELETE CASCADE,
  date                 DATE NOT NULL,
  requests_made        INT NOT NULL DEFAULT 0,
  requests_successful  INT NOT NULL DEFAULT 0,
  requests_failed      INT NOT NULL DEFAULT 0,
  units_used           INT NOT NULL DEFAULT 0,
  last_request_at      TIMESTAMPTZ,
  PRIMARY KEY (credential_id, date)
);

CREATE TABLE keyword_tasks (
  id               UUID PRIMARY KEY,
  owner_id         TEXT NOT NULL,
  keyword          TEXT NOT NULL,
  domain           TEXT NOT NULL,
  device_type      TEXT NOT NULL DEFAULT 'desktop',
  country_code     TEXT NOT NULL DEFAULT 'us',
  is_active        BOOLEAN NOT NULL DEFAULT TRUE,
  last_check_date  DATE,
  created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_keyword_tasks_due
ON keyword_tasks (owner_id, created_at)
WHERE is_active;

CREATE TABLE rank_history (
  id              UUID PRIMARY KEY,
  task_id         UUID NOT NULL REFERENCES keyword_tasks (id) ON DELETE CASCADE,
  check_date      DATE NOT NULL,
  position        INT,
  url             TEXT,
  found           BOOLEAN NOT NULL DEFAULT FALSE,
  total_results   INT NOT NULL DEFAULT 0,
  units_consumed  INT,
  created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
  UNIQUE (task_id, check_date)
);

CREATE TABLE notifications (
  id          UUID PRIMARY KEY,
  owner_id    TEXT,
  type        TEXT NOT NULL,
  message     TEXT NOT NULL,
  created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_notifications_type_created
ON notifications (type, created_at);

CREATE TABLE sweep_locks (
  name       TEXT PRIMARY KEY,
  locked_by  TEXT,
  locked_at  TIMESTAMPTZ
);
"""
