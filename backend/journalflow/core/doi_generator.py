from __future__ import annotations

import secrets
import string
from datetime import datetime, timezone

_BASE36 = string.digits + string.ascii_lowercase


def generate_doi_candidate(
    *,
    prefix: str = "10.1234",
    now: datetime | None = None,
    suffix_length: int = 8,
) -> str:
    """
    DOI 候选值生成

    规则:
    - 格式: {prefix}/csmr.{epoch_ms}.{8 位 base36 随机串}
    - 唯一性由调用方（DOI 服务）在全局锁内校验，碰撞时重新生成
    """
    ts = now or datetime.now(timezone.utc)
    epoch_ms = int(ts.timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(max(1, suffix_length)))
    clean_prefix = (prefix or "10.1234").strip().rstrip("/")
    return f"{clean_prefix}/csmr.{epoch_ms}.{suffix}"


def generate_manuscript_code(*, prefix: str = "CSMR", now: datetime | None = None) -> str:
    """例如 CSMR-2026-4F7K2Q"""
    ts = now or datetime.now(timezone.utc)
    short = "".join(secrets.choice(string.digits + string.ascii_uppercase) for _ in range(6))
    return f"{prefix}-{ts.year}-{short}"
