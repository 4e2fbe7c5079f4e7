import os
from typing import Any, Callable, Optional

from supabase import Client, create_client

from journalflow.core.config import app_config
from journalflow.core.errors import StorageUnavailable

url: str = app_config.supabase_url

# 中文注释:
# - 引擎只使用 service_role 客户端读写 manuscripts / user_profiles / notifications。
# - 缺少配置时不做任何 demo 数据兜底，直接抛出 StorageUnavailable。
service_role_key: str = app_config.supabase_key or os.environ.get("SUPABASE_KEY", "")


class _LazySupabaseClient:
    """
    延迟初始化 Supabase Client，避免在 import 时因为缺少环境变量导致整个模块导入失败。

    中文注释:
    - 单元测试会注入 MagicMock client，因此这里必须保证“可导入”。
    - 真实运行时，如果缺少 URL/KEY，在第一次访问 client 时抛出清晰错误即可。
    """

    def __init__(self, factory: Callable[[], Client], *, name: str):
        self._factory = factory
        self._name = name
        self._client: Optional[Client] = None

    def _get(self) -> Client:
        if self._client is None:
            self._client = self._factory()
        return self._client

    def __getattr__(self, item: str) -> Any:
        return getattr(self._get(), item)


def _create_supabase_admin() -> Client:
    if not url:
        raise StorageUnavailable("SUPABASE_URL is required")
    if not service_role_key:
        raise StorageUnavailable("SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_KEY) is required")
    try:
        return create_client(url, service_role_key)
    except Exception as e:
        raise StorageUnavailable(f"Supabase client init failed: {e}") from e


# === 管理端 Supabase 客户端（延迟初始化） ===
supabase_admin: Client = _LazySupabaseClient(_create_supabase_admin, name="supabase_admin")  # type: ignore[assignment]
