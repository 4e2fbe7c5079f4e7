from journalflow.core.config import SentryConfig, WorkflowConfig


def test_workflow_config_defaults(monkeypatch):
    for key in (
        "DOI_PREFIX",
        "DOI_MAX_ATTEMPTS",
        "CAS_MAX_ATTEMPTS",
        "METRICS_DEFAULT_WINDOW_DAYS",
        "MANUSCRIPT_CODE_PREFIX",
    ):
        monkeypatch.delenv(key, raising=False)
    cfg = WorkflowConfig.from_env()
    assert cfg.doi_prefix == "10.1234"
    assert cfg.doi_max_attempts == 5
    assert cfg.cas_max_attempts == 3
    assert cfg.metrics_default_window_days == 90
    assert cfg.manuscript_code_prefix == "CSMR"


def test_workflow_config_reads_env_and_tolerates_garbage(monkeypatch):
    monkeypatch.setenv("DOI_PREFIX", " 10.9999 ")
    monkeypatch.setenv("DOI_MAX_ATTEMPTS", "abc")
    monkeypatch.setenv("CAS_MAX_ATTEMPTS", "0")
    monkeypatch.setenv("MANUSCRIPT_CODE_PREFIX", "jf")
    cfg = WorkflowConfig.from_env()
    assert cfg.doi_prefix == "10.9999"
    assert cfg.doi_max_attempts == 5
    assert cfg.cas_max_attempts == 1
    assert cfg.manuscript_code_prefix == "JF"


def test_sentry_disabled_without_dsn(monkeypatch):
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    monkeypatch.delenv("SENTRY_ENABLED", raising=False)
    cfg = SentryConfig.from_env()
    assert cfg.enabled is False
    assert cfg.dsn is None


def test_sentry_sample_rate_is_clamped(monkeypatch):
    monkeypatch.setenv("SENTRY_DSN", "https://key@example.ingest.sentry.io/1")
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "3.5")
    monkeypatch.delenv("SENTRY_ENABLED", raising=False)
    cfg = SentryConfig.from_env()
    assert cfg.enabled is True
    assert cfg.traces_sample_rate == 1.0
