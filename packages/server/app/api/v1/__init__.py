"""
API v1 Router
"""

from fastapi import APIRouter
from . import audit_logs, auth, departments, organizations, projects, tasks, users

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
router.include_router(users.router, prefix="/users", tags=["Users"])
router.include_router(organizations.router, prefix="/organizations", tags=["Organizations"])
router.include_router(departments.router, prefix="/departments", tags=["Departments"])
router.include_router(projects.router, prefix="/projects", tags=["Projects"])
router.include_router(tasks.router, prefix="/tasks", tags=["Tasks"])
router.include_router(audit_logs.router, prefix="/audit-logs", tags=["Audit Logs"])


@router.get("/", tags=["API"])
async def api_root():
    """API root — returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/auth",
            "/users",
            "/organizations",
            "/departments",
            "/projects",
            "/tasks",
            "/audit-logs",
        ],
    }
