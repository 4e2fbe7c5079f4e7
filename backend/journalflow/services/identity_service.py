from __future__ import annotations

import logging
from typing import Any, Iterable, Protocol

from journalflow.core.errors import StorageUnavailable
from journalflow.core.role_matrix import normalize_roles

logger = logging.getLogger("journalflow.identity")

# PostgREST 的 in_ 过滤拼在 URL 上，过长会被网关拒绝
LOOKUP_CHUNK_SIZE = 200


class IdentityResolver(Protocol):
    """
    Identity Resolver 接口（外部协作方）。

    - resolve_roles: id -> 角色集合；未知 id 不出现在结果中
    - resolve_names: id -> 展示名（用于排行榜的稳定排序）
    """

    def resolve_roles(self, ids: Iterable[str]) -> dict[str, set[str]]: ...

    def resolve_names(self, ids: Iterable[str]) -> dict[str, str]: ...


def _clean_ids(ids: Iterable[str]) -> list[str]:
    return sorted({str(x).strip() for x in ids if str(x or "").strip()})


class SupabaseIdentityResolver:
    """
    基于 user_profiles 表的身份解析。

    中文注释:
    - user_profiles.roles 为数组（例如 ['reviewer','author']）；兼容旧数据里单值 role 字段。
    - 查询失败直接抛 StorageUnavailable，不做任何降级（避免把失败当成“审稿人不存在”）。
    """

    def __init__(self, client: Any = None) -> None:
        if client is None:
            from journalflow.lib.api_client import supabase_admin

            client = supabase_admin
        self.client = client

    def _load_profiles(self, ids: list[str]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for start in range(0, len(ids), LOOKUP_CHUNK_SIZE):
            chunk = ids[start : start + LOOKUP_CHUNK_SIZE]
            try:
                resp = (
                    self.client.table("user_profiles")
                    .select("id,full_name,email,roles,role")
                    .in_("id", chunk)
                    .execute()
                )
            except Exception as e:
                logger.error("[Identity] user_profiles lookup failed: %s", e)
                raise StorageUnavailable("Identity lookup failed") from e
            rows.extend(getattr(resp, "data", None) or [])
        return rows

    def resolve_roles(self, ids: Iterable[str]) -> dict[str, set[str]]:
        out: dict[str, set[str]] = {}
        for row in self._load_profiles(_clean_ids(ids)):
            rid = str(row.get("id") or "").strip()
            if not rid:
                continue
            roles = row.get("roles") or []
            if isinstance(roles, str):
                roles = [roles]
            legacy = row.get("role")
            if legacy:
                roles = [*roles, legacy]
            out[rid] = normalize_roles(roles)
        return out

    def resolve_names(self, ids: Iterable[str]) -> dict[str, str]:
        out: dict[str, str] = {}
        for row in self._load_profiles(_clean_ids(ids)):
            rid = str(row.get("id") or "").strip()
            if not rid:
                continue
            name = str(row.get("full_name") or "").strip() or str(row.get("email") or "").strip()
            out[rid] = name or rid
        return out
