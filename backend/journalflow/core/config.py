import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int, *, min_value: int = 1) -> int:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(min_value, value)


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production'
    is_staging: bool
    supabase_url: str
    supabase_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        is_staging = env == "staging"

        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        return AppConfig(
            env=env,
            is_staging=is_staging,
            supabase_url=supabase_url,
            supabase_key=supabase_key,
        )


# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class WorkflowConfig:
    """
    编辑流程引擎配置

    中文注释:
    1) DOI 前缀与重试次数必须可配置，避免硬编码。
    2) CAS 重试次数只针对同一稿件的并发写冲突，超过后以 Conflict 返回给调用方。
    """

    doi_prefix: str
    doi_max_attempts: int
    cas_max_attempts: int
    metrics_default_window_days: int
    manuscript_code_prefix: str

    @staticmethod
    def from_env() -> "WorkflowConfig":
        doi_prefix = (os.environ.get("DOI_PREFIX") or "10.1234").strip()
        code_prefix = (os.environ.get("MANUSCRIPT_CODE_PREFIX") or "CSMR").strip().upper()

        return WorkflowConfig(
            doi_prefix=doi_prefix,
            doi_max_attempts=_env_int("DOI_MAX_ATTEMPTS", 5),
            cas_max_attempts=_env_int("CAS_MAX_ATTEMPTS", 3),
            metrics_default_window_days=_env_int("METRICS_DEFAULT_WINDOW_DAYS", 90),
            manuscript_code_prefix=code_prefix or "CSMR",
        )


@dataclass(frozen=True)
class SentryConfig:
    """
    Sentry 错误监控配置（未配置 DSN 时整体禁用）
    """

    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        enabled = _env_bool("SENTRY_ENABLED", bool(dsn))
        environment = (
            os.environ.get("SENTRY_ENVIRONMENT") or app_config.env or "development"
        ).strip()

        rate_raw = (os.environ.get("SENTRY_TRACES_SAMPLE_RATE") or "0.0").strip()
        try:
            traces_sample_rate = float(rate_raw)
        except ValueError:
            traces_sample_rate = 0.0
        traces_sample_rate = min(1.0, max(0.0, traces_sample_rate))

        return SentryConfig(
            enabled=enabled,
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
        )
