from .role import Role  # noqa: F401
from .user import User  # noqa: F401
from .permission import PermissionModule, PermissionAction, RolePermission, DefaultRolePermission  # noqa: F401
from .task import Task  # noqa: F401
from .email import EmailTemplate, EmailRule, EmailQueueItem, EmailLog  # noqa: F401
