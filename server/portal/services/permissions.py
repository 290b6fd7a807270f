"""Role-keyed permission matrices with optimistic writes.

Each role owns one cache slot holding a ``module -> action -> bool`` matrix.
A slot is replaced wholesale by every successful fetch; optimistic toggles
only live until that next fetch. Lookups fail closed: an unloaded role, an
unknown module or an unknown action all read as denied.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from slugify import slugify

from portal.services.permission_store import (
    ActionRecord,
    BackendError,
    ModuleRecord,
    PermissionGrant,
    PermissionStore,
    RoleNotFoundError,
    RoleRecord,
)
from portal.services.realtime import ChangeEvent, RealtimeHub

logger = logging.getLogger(__name__)

PermissionMatrix = dict[str, dict[str, bool]]

ROLES_CACHE = "roles"
MODULES_CACHE = "permission-modules"
ACTIONS_CACHE = "permission-actions"

CHANNEL_ROLE_PERMISSIONS = "permissions:role_permissions"
CHANNEL_ROLES = "permissions:roles"
CHANNEL_MODULES = "permissions:permission_modules"
CHANNEL_ACTIONS = "permissions:permission_actions"


class PermissionState(str, Enum):
    UNKNOWN = "unknown"
    DENIED = "denied"
    GRANTED = "granted"
    PENDING = "pending"


class MatrixNotLoadedError(RuntimeError):
    """Raised when a role's matrix is toggled before it was ever fetched."""


class RolePermissionSetupError(BackendError):
    """The role was created but its permission baseline could not be written."""

    def __init__(self, role: str) -> None:
        super().__init__(f"Role '{role}' was created but its default permissions could not be set up")
        self.role = role


@dataclass
class _MatrixSlot:
    matrix: PermissionMatrix
    fetched_at: float
    sequence: int
    stale: bool = False
    pending: set[tuple[str, str]] = field(default_factory=set)


@dataclass
class _RegistrySlot:
    items: list[Any]
    fetched_at: float


_ABSENT = object()


def build_matrix(grants: Iterable[PermissionGrant]) -> PermissionMatrix:
    matrix: PermissionMatrix = {}
    for grant in grants:
        matrix.setdefault(grant.module, {})[grant.action] = bool(grant.enabled)
    return matrix


def normalize_role_name(value: str) -> str:
    return slugify(value or "", separator="_")


class PermissionService:
    def __init__(
        self,
        store: PermissionStore,
        *,
        ttl_seconds: float = 0.0,
        registry_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._registry_ttl_seconds = registry_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._slots: dict[str, _MatrixSlot] = {}
        self._last_sequence = 0
        self._invalidated_at: dict[str, int] = {}
        self._registry: dict[str, _RegistrySlot] = {}
        self._registry_generation = 0
        self._hub: RealtimeHub | None = None
        self._subscribed = False

    # -- matrix cache -----------------------------------------------------

    def _next_sequence(self) -> int:
        with self._lock:
            self._last_sequence += 1
            return self._last_sequence

    def fetch_permission_matrix(self, role: str) -> PermissionMatrix:
        """Load ``role``'s grants from the store and replace its cache slot.

        A response is dropped when a fetch issued later for the same role has
        already been applied. Store failures propagate as ``BackendError`` and
        leave the current slot untouched.
        """

        sequence = self._next_sequence()
        try:
            grants = self._store.fetch_role_permissions(role)
        except BackendError:
            logger.warning("permission_fetch_failed", extra={"role": role, "sequence": sequence})
            raise
        matrix = build_matrix(grants)
        with self._lock:
            current = self._slots.get(role)
            if current is not None and current.sequence > sequence:
                logger.info(
                    "permission_fetch_discarded",
                    extra={"role": role, "sequence": sequence, "applied": current.sequence},
                )
                return copy.deepcopy(current.matrix)
            stale = sequence <= self._invalidated_at.get(role, 0)
            self._slots[role] = _MatrixSlot(matrix=matrix, fetched_at=self._clock(), sequence=sequence, stale=stale)
        logger.debug("permission_matrix_loaded", extra={"role": role, "modules": len(matrix)})
        return copy.deepcopy(matrix)

    def get_matrix(self, role: str) -> PermissionMatrix | None:
        slot = self._slots.get(role)
        if slot is None:
            return None
        with self._lock:
            return copy.deepcopy(slot.matrix)

    def is_loaded(self, role: str) -> bool:
        return role in self._slots

    def is_fresh(self, role: str) -> bool:
        slot = self._slots.get(role)
        if slot is None or slot.stale:
            return False
        return (self._clock() - slot.fetched_at) < self._ttl_seconds

    def refresh(self, role: str) -> PermissionMatrix | None:
        """Refetch ``role`` when stale, keeping the last good matrix on failure."""

        if self.is_fresh(role):
            return self.get_matrix(role)
        try:
            return self.fetch_permission_matrix(role)
        except BackendError:
            logger.warning(
                "permission_refresh_failed",
                extra={"role": role, "has_cached": self.is_loaded(role)},
            )
            return self.get_matrix(role)

    def has_permission(self, role: str | None, module: str, action: str) -> bool:
        if not role:
            return False
        slot = self._slots.get(role)
        if slot is None:
            return False
        return slot.matrix.get(module, {}).get(action) is True

    def entry_state(self, role: str, module: str, action: str) -> PermissionState:
        slot = self._slots.get(role)
        if slot is None:
            return PermissionState.UNKNOWN
        if (module, action) in slot.pending:
            return PermissionState.PENDING
        if slot.matrix.get(module, {}).get(action) is True:
            return PermissionState.GRANTED
        return PermissionState.DENIED

    def set_optimistic_permission(self, role: str, module: str, action: str, enabled: bool) -> None:
        self._write_optimistic(role, module, action, enabled)

    def _write_optimistic(self, role: str, module: str, action: str, enabled: bool) -> tuple[_MatrixSlot, Any]:
        with self._lock:
            slot = self._slots.get(role)
            if slot is None:
                raise MatrixNotLoadedError(f"Permissions for role '{role}' have not been loaded")
            actions = slot.matrix.setdefault(module, {})
            previous = actions.get(action, _ABSENT)
            actions[action] = bool(enabled)
            slot.pending.add((module, action))
        return slot, previous

    def _revert_optimistic(self, role: str, slot: _MatrixSlot, module: str, action: str, previous: Any) -> None:
        """Undo a rejected optimistic write unless a fetch already replaced the slot."""

        with self._lock:
            if self._slots.get(role) is not slot:
                return
            actions = slot.matrix.get(module, {})
            if previous is _ABSENT:
                actions.pop(action, None)
                if not actions:
                    slot.matrix.pop(module, None)
            else:
                actions[action] = previous
            slot.pending.discard((module, action))

    def _forget_role(self, role: str) -> None:
        with self._lock:
            self._slots.pop(role, None)
            self._invalidated_at.pop(role, None)

    def context_for(self, role: str | None) -> "PermissionContext":
        if role:
            self.refresh(role)
        return PermissionContext(self, role)

    # -- invalidation -----------------------------------------------------

    def invalidate_permissions(self, role: str | None = None) -> None:
        """Mark one role's matrix (or every matrix) as needing a refetch.

        Cached grants stay readable until the refetch lands.
        """

        with self._lock:
            roles = [role] if role else list(self._slots)
            for name in roles:
                self._invalidated_at[name] = self._last_sequence
                slot = self._slots.get(name)
                if slot is not None:
                    slot.stale = True
        logger.debug("permissions_invalidated", extra={"role": role or "*"})

    def invalidate_roles(self) -> None:
        with self._lock:
            self._registry_generation += 1
            self._registry.pop(ROLES_CACHE, None)

    def invalidate_registry(self) -> None:
        with self._lock:
            self._registry_generation += 1
            self._registry.pop(MODULES_CACHE, None)
            self._registry.pop(ACTIONS_CACHE, None)
        self.invalidate_permissions()

    # -- registry ---------------------------------------------------------

    def _cached(self, key: str, loader: Callable[[], list[Any]]) -> list[Any]:
        """Serve a registry list, reloading it once ``registry_ttl_seconds`` pass.

        Changes committed by other processes never reach the in-process hub,
        so the TTL bounds how long such a change stays invisible. A failed
        reload keeps serving the previous list when there is one.
        """

        slot = self._registry.get(key)
        if slot is not None and (self._clock() - slot.fetched_at) < self._registry_ttl_seconds:
            return list(slot.items)
        generation = self._registry_generation
        try:
            items = loader()
        except BackendError:
            if slot is None:
                raise
            logger.warning("registry_refresh_failed", extra={"cache": key})
            return list(slot.items)
        with self._lock:
            # An invalidation during the load means the result may predate it.
            if generation == self._registry_generation:
                self._registry[key] = _RegistrySlot(items=items, fetched_at=self._clock())
        return list(items)

    def list_roles(self) -> list[RoleRecord]:
        return self._cached(ROLES_CACHE, self._store.list_roles)

    def _find_role(self, name: str) -> RoleRecord | None:
        return next((role for role in self.list_roles() if role.name == name), None)

    def get_role(self, name: str) -> RoleRecord | None:
        role = self._find_role(name)
        if role is None:
            # A miss may be a role created elsewhere since the list was cached.
            self.invalidate_roles()
            role = self._find_role(name)
        return role

    def list_assignable_roles(self, *, is_super_admin: bool = False) -> list[RoleRecord]:
        roles = [role for role in self.list_roles() if role.is_active]
        if is_super_admin:
            return roles
        return [role for role in roles if not role.admin_only]

    def list_modules(self) -> list[ModuleRecord]:
        return self._cached(MODULES_CACHE, self._store.list_modules)

    def list_actions(self) -> list[ActionRecord]:
        return self._cached(ACTIONS_CACHE, self._store.list_actions)

    def get_role_permissions(self, role: str) -> PermissionMatrix:
        """Full module x action grid for ``role`` with gaps filled as denied."""

        matrix = self.fetch_permission_matrix(role)
        actions = [action.name for action in self.list_actions()]
        return {
            module.name: {action: matrix.get(module.name, {}).get(action, False) for action in actions}
            for module in self.list_modules()
        }

    # -- writes -----------------------------------------------------------

    def toggle_permission(self, role: str, module: str, action: str, enabled: bool) -> None:
        """Apply a grant change locally, then write it to the store.

        A rejected write takes the optimistic value back out of the slot, so
        the last-known-good matrix never carries a grant the store refused.
        A slot that only exists because of this call is dropped again.
        """

        loaded_here = not self.is_loaded(role)
        if loaded_here:
            self.fetch_permission_matrix(role)
        slot, previous = self._write_optimistic(role, module, action, enabled)
        try:
            self._store.upsert_permission(role, module, action, enabled)
        except RoleNotFoundError:
            self._forget_role(role)
            raise
        except Exception:
            if loaded_here:
                self._forget_role(role)
            else:
                self._revert_optimistic(role, slot, module, action, previous)
                self.invalidate_permissions(role)
            logger.warning(
                "role_permission_update_rejected",
                extra={"role": role, "module": module, "action": action, "enabled": enabled},
            )
            raise
        self.invalidate_permissions(role)
        logger.info(
            "role_permission_updated",
            extra={"role": role, "module": module, "action": action, "enabled": enabled},
        )

    def reset_to_defaults(self, role: str) -> int:
        restored = self._store.reset_role_permissions(role)
        self.invalidate_permissions(role)
        logger.info("role_permissions_reset", extra={"role": role, "restored": restored})
        return restored

    def add_role(self, role_name: str, display_label: str | None = None, is_admin_only: bool = False) -> RoleRecord:
        """Register a role, then write its permission baseline.

        The two steps are not atomic. When the second fails the role stays
        registered without permissions and ``RolePermissionSetupError`` is
        raised so the caller can surface it.
        """

        name = normalize_role_name(role_name)
        if not name:
            raise ValueError("Role name is required")
        label = (display_label or "").strip() or name.replace("_", " ").title()

        record = self._store.insert_role(name, label, is_admin_only)
        logger.info("role_added", extra={"role": name, "admin_only": is_admin_only})
        self.invalidate_roles()
        try:
            created = self._store.seed_role_permissions(name)
        except BackendError as exc:
            logger.error("role_permission_setup_failed", extra={"role": name})
            raise RolePermissionSetupError(name) from exc
        self.invalidate_permissions(name)
        logger.info("role_permissions_seeded", extra={"role": name, "rows": created})
        return record

    def update_role(self, role: str, **changes: Any) -> RoleRecord:
        record = self._store.update_role(role, changes)
        self.invalidate_roles()
        return record

    def reorder_roles(self, orders: Iterable[tuple[str, int]]) -> None:
        self._store.reorder_roles(list(orders))
        self.invalidate_roles()

    # -- realtime ---------------------------------------------------------

    def subscribe_realtime(self, hub: RealtimeHub) -> None:
        with self._lock:
            if self._subscribed:
                logger.debug("permission_realtime_already_subscribed")
                return
            self._subscribed = True
            self._hub = hub
        hub.subscribe(CHANNEL_ROLE_PERMISSIONS, "role_permissions", self._on_role_permission_change)
        hub.subscribe(CHANNEL_ROLES, "roles", self._on_role_change)
        hub.subscribe(CHANNEL_MODULES, "permission_modules", self._on_registry_change)
        hub.subscribe(CHANNEL_ACTIONS, "permission_actions", self._on_registry_change)

    def _on_role_permission_change(self, change: ChangeEvent) -> None:
        self.invalidate_permissions(change.keys.get("role"))

    def _on_role_change(self, change: ChangeEvent) -> None:
        self.invalidate_roles()
        role = change.keys.get("name")
        if change.kind == "delete" and role:
            with self._lock:
                self._slots.pop(role, None)

    def _on_registry_change(self, change: ChangeEvent) -> None:
        self.invalidate_registry()

    def close(self) -> None:
        with self._lock:
            hub, subscribed = self._hub, self._subscribed
            self._hub = None
            self._subscribed = False
            self._slots.clear()
            self._registry.clear()
            self._invalidated_at.clear()
        if subscribed and hub is not None:
            for channel in (CHANNEL_ROLE_PERMISSIONS, CHANNEL_ROLES, CHANNEL_MODULES, CHANNEL_ACTIONS):
                hub.unsubscribe(channel)


class PermissionContext:
    """Permission view for one actor, bound to that actor's role."""

    def __init__(self, service: PermissionService, role: str | None) -> None:
        self.service = service
        self.role = role

    @property
    def is_loaded(self) -> bool:
        return bool(self.role) and self.service.is_loaded(self.role)

    @property
    def matrix(self) -> PermissionMatrix:
        if not self.role:
            return {}
        return self.service.get_matrix(self.role) or {}

    def has_permission(self, module: str, action: str) -> bool:
        return self.service.has_permission(self.role, module, action)

    def set_optimistic_permission(self, module: str, action: str, enabled: bool) -> None:
        if not self.role:
            raise MatrixNotLoadedError("No role is bound to this permission context")
        self.service.set_optimistic_permission(self.role, module, action, enabled)


@dataclass(frozen=True)
class ModulePermissions:
    can_access: bool
    can_read: bool
    can_view_details: bool
    can_create: bool
    can_update: bool
    can_delete: bool


def module_permissions(context: PermissionContext, module: str) -> ModulePermissions:
    return ModulePermissions(
        can_access=context.has_permission(module, "sidebar"),
        can_read=context.has_permission(module, "read"),
        can_view_details=context.has_permission(module, "view"),
        can_create=context.has_permission(module, "create"),
        can_update=context.has_permission(module, "update"),
        can_delete=context.has_permission(module, "delete"),
    )


def sidebar_modules(context: PermissionContext) -> list[ModuleRecord]:
    return [
        module
        for module in context.service.list_modules()
        if module.is_active and module.show_in_sidebar and context.has_permission(module.name, "sidebar")
    ]
