from __future__ import annotations

from typing import Iterable

from journalflow.models.manuscript import ManuscriptStatus

# 中文注释：
# - 这里集中定义“角色 -> 动作”权限矩阵，避免权限逻辑散落在各服务/路由。
# - 与具体稿件相关的授权（作者本人、当前绑定的审稿人）由 can_request_transition 处理。

ADMIN_ROLE = "admin"
EDITOR_ROLE = "editor"
REVIEWER_ROLE = "reviewer"
AUTHOR_ROLE = "author"

EDITORIAL_ROLES = frozenset({EDITOR_ROLE, ADMIN_ROLE})
REVIEW_ELIGIBLE_ROLES = frozenset({REVIEWER_ROLE, EDITOR_ROLE, ADMIN_ROLE})

ROLE_ACTIONS: dict[str, set[str]] = {
    AUTHOR_ROLE: {
        "manuscript:submit",
        "manuscript:revise_own",
        "manuscript:withdraw_own",
    },
    REVIEWER_ROLE: {
        "review:record_own",
        "manuscript:request_revision_assigned",
    },
    EDITOR_ROLE: {
        "manuscript:submit",
        "manuscript:transition",
        "manuscript:decide",
        "manuscript:publish",
        "review:assign",
        "review:record_any",
        "doi:generate",
        "analytics:view",
    },
    ADMIN_ROLE: {
        "*",
    },
}

# 只有 editor/admin 能做出的决定性流转
_DECISION_ACTIONS = {
    ManuscriptStatus.ACCEPTED: "manuscript:decide",
    ManuscriptStatus.REJECTED: "manuscript:decide",
    ManuscriptStatus.PUBLISHED: "manuscript:publish",
}


def normalize_roles(roles: Iterable[str] | None) -> set[str]:
    """
    将输入角色归一化（小写、去空）。
    """
    out: set[str] = set()
    for raw in roles or []:
        role = str(raw or "").strip().lower()
        if not role:
            continue
        out.add(role)
    return out


def can_perform_action(*, action: str, roles: Iterable[str] | None) -> bool:
    """
    判定角色集合是否可执行某动作。

    中文注释：
    - admin 拥有全局通配权限；
    - 其余角色按 ROLE_ACTIONS 显式授权。
    """
    normalized = normalize_roles(roles)
    if ADMIN_ROLE in normalized:
        return True

    for role in normalized:
        allowed = ROLE_ACTIONS.get(role) or set()
        if "*" in allowed or action in allowed:
            return True
    return False


def is_editorial(roles: Iterable[str] | None) -> bool:
    return bool(normalize_roles(roles) & EDITORIAL_ROLES)


def can_request_transition(
    *,
    target: ManuscriptStatus,
    roles: Iterable[str] | None,
    actor_id: str,
    author_id: str | None,
    bound_reviewers: Iterable[str],
) -> bool:
    """
    - accepted / rejected / published: 仅 editor/admin
    - revision-required: editor/admin 或当前绑定（任务未结束）的审稿人
    - revised / withdrawn: editor/admin 或稿件作者本人
    - 其余流转: editor/admin
    """
    decision = _DECISION_ACTIONS.get(target)
    if decision is not None:
        return can_perform_action(action=decision, roles=roles)
    if can_perform_action(action="manuscript:transition", roles=roles):
        return True

    is_author = bool(author_id) and actor_id == author_id
    if target == ManuscriptStatus.REVISION_REQUIRED:
        return actor_id in set(bound_reviewers) and can_perform_action(
            action="manuscript:request_revision_assigned", roles=roles
        )
    if target == ManuscriptStatus.REVISED:
        return is_author and can_perform_action(action="manuscript:revise_own", roles=roles)
    if target == ManuscriptStatus.WITHDRAWN:
        return is_author and can_perform_action(action="manuscript:withdraw_own", roles=roles)
    return False
