# SQLModel definitions — imported here to ensure metadata is populated for Alembic.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .organization import Organization  # noqa: F401
from .department import Department  # noqa: F401
from .user import User  # noqa: F401
from .project import Project  # noqa: F401
from .task import Task  # noqa: F401
from .assignments import ProjectMember, TaskAssignee  # noqa: F401
from .dependency import TaskDependency  # noqa: F401
from .audit_log import AuditLog  # noqa: F401
