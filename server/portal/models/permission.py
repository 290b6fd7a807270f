from __future__ import annotations

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from portal.core.db import Base


class PermissionModule(Base):
    __tablename__ = "permission_modules"

    id = Column(Integer, primary_key=True)
    name = Column(String(64), unique=True, nullable=False, index=True)
    label = Column(String(120), nullable=False)
    description = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    show_in_sidebar = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)


class PermissionAction(Base):
    __tablename__ = "permission_actions"

    id = Column(Integer, primary_key=True)
    name = Column(String(64), unique=True, nullable=False, index=True)
    label = Column(String(120), nullable=False)
    description = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class RolePermission(Base):
    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role", "module_id", "action_id", name="uq_role_permissions_role_module_action"),)

    id = Column(Integer, primary_key=True)
    role = Column(String(64), ForeignKey("roles.name", ondelete="CASCADE", onupdate="CASCADE"), nullable=False, index=True)
    module_id = Column(Integer, ForeignKey("permission_modules.id", ondelete="CASCADE"), nullable=False)
    action_id = Column(Integer, ForeignKey("permission_actions.id", ondelete="CASCADE"), nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)

    module = relationship("PermissionModule", lazy="joined")
    action = relationship("PermissionAction", lazy="joined")


class DefaultRolePermission(Base):
    __tablename__ = "default_role_permissions"
    __table_args__ = (
        UniqueConstraint("role", "module_id", "action_id", name="uq_default_role_permissions_role_module_action"),
    )

    id = Column(Integer, primary_key=True)
    role = Column(String(64), nullable=False, index=True)
    module_id = Column(Integer, ForeignKey("permission_modules.id", ondelete="CASCADE"), nullable=False)
    action_id = Column(Integer, ForeignKey("permission_actions.id", ondelete="CASCADE"), nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)

    module = relationship("PermissionModule", lazy="joined")
    action = relationship("PermissionAction", lazy="joined")
