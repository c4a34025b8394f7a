"""
Tests for task endpoints and dependency management.

Covers:
- CRUD, status updates, filters
- Ownership (creator or project owner) and visibility
- Dependency add/remove: circular, self, duplicate, cross-project, missing
- Concurrent additions that would jointly close a cycle
- Storage failure translation
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import select

from app.core.dependency_graph import (
    CIRCULAR_DEPENDENCY,
    CROSS_PROJECT,
    DUPLICATE_DEPENDENCY,
    SELF_DEPENDENCY,
)
from app.core.errors import Conflict, InfrastructureError
from app.models.dependency import TaskDependency
from app.models.task import Task
from app.services.tasks import CONCURRENT_CHANGE, delete_task, storage_errors


def _deps_url(task, depends_on=None) -> str:
    url = f"/api/v1/tasks/{task.id}/dependencies"
    return f"{url}/{depends_on.id}" if depends_on is not None else url


async def _edges(session_factory, project) -> list[tuple[uuid.UUID, uuid.UUID]]:
    async with session_factory() as s:
        rows = await s.execute(
            select(TaskDependency.task_id, TaskDependency.depends_on_id).where(
                TaskDependency.project_id == project.id
            )
        )
        return sorted(tuple(r) for r in rows.all())


@pytest.fixture
async def owner(make_user):
    return await make_user("USER")


@pytest.fixture
async def project(make_project, owner):
    return await make_project(owner)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


class TestTaskCrud:
    @pytest.mark.asyncio
    async def test_create_and_get(self, client, auth_headers, owner, project):
        response = await client.post(
            f"/api/v1/tasks/project/{project.id}",
            json={"title": "Pour foundation", "priority": "HIGH", "duration": 16},
            headers=auth_headers(owner),
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "TODO"
        assert body["priority"] == "HIGH"
        assert body["created_by"] == str(owner.id)

        fetched = await client.get(f"/api/v1/tasks/{body['id']}", headers=auth_headers(owner))
        assert fetched.status_code == 200
        assert fetched.json()["title"] == "Pour foundation"

    @pytest.mark.asyncio
    async def test_create_rejects_end_before_start(self, client, auth_headers, owner, project):
        response = await client.post(
            f"/api/v1/tasks/project/{project.id}",
            json={
                "title": "Backwards",
                "start_date": "2026-05-02T00:00:00Z",
                "end_date": "2026-05-01T00:00:00Z",
            },
            headers=auth_headers(owner),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_with_initial_dependencies(
        self, client, auth_headers, owner, project, make_task, session_factory
    ):
        base = await make_task(project, "Survey")
        response = await client.post(
            f"/api/v1/tasks/project/{project.id}",
            json={"title": "Excavate", "dependencies": [str(base.id)]},
            headers=auth_headers(owner),
        )
        assert response.status_code == 201
        body = response.json()
        assert [d["id"] for d in body["dependencies"]] == [str(base.id)]
        assert await _edges(session_factory, project) == [(uuid.UUID(body["id"]), base.id)]

    @pytest.mark.asyncio
    async def test_create_with_cross_project_dependency_rolls_back(
        self, client, auth_headers, owner, project, make_project, make_task, session_factory
    ):
        other = await make_project(owner, "Elsewhere")
        foreign = await make_task(other, "Foreign")
        response = await client.post(
            f"/api/v1/tasks/project/{project.id}",
            json={"title": "Excavate", "dependencies": [str(foreign.id)]},
            headers=auth_headers(owner),
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == CROSS_PROJECT

        listing = await client.get(f"/api/v1/tasks/project/{project.id}", headers=auth_headers(owner))
        assert listing.json()["data"] == []

    @pytest.mark.asyncio
    async def test_list_with_filters(self, client, auth_headers, owner, project, make_task):
        await make_task(project, "Alpha")
        beta = await make_task(project, "Beta")
        await client.patch(
            f"/api/v1/tasks/{beta.id}/status", json={"status": "COMPLETED"}, headers=auth_headers(owner)
        )

        everything = await client.get(f"/api/v1/tasks/project/{project.id}", headers=auth_headers(owner))
        assert everything.json()["pagination"]["total"] == 2

        done = await client.get(
            f"/api/v1/tasks/project/{project.id}",
            params={"status": "COMPLETED"},
            headers=auth_headers(owner),
        )
        assert [t["title"] for t in done.json()["data"]] == ["Beta"]

    @pytest.mark.asyncio
    async def test_update(self, client, auth_headers, owner, project, make_task):
        task = await make_task(project)
        response = await client.put(
            f"/api/v1/tasks/{task.id}",
            json={"title": "Renamed", "assignee_ids": [str(owner.id)]},
            headers=auth_headers(owner),
        )
        assert response.status_code == 200
        assert response.json()["title"] == "Renamed"
        assert response.json()["assignee_ids"] == [str(owner.id)]

    @pytest.mark.asyncio
    async def test_update_unknown_assignee(self, client, auth_headers, owner, project, make_task):
        task = await make_task(project)
        response = await client.put(
            f"/api/v1/tasks/{task.id}",
            json={"assignee_ids": [str(uuid.uuid4())]},
            headers=auth_headers(owner),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["IN_PROGRESS", "ON_HOLD", "CANCELLED", "TODO"])
    async def test_status_is_set_directly(self, client, auth_headers, owner, project, make_task, status):
        task = await make_task(project)
        response = await client.patch(
            f"/api/v1/tasks/{task.id}/status", json={"status": status}, headers=auth_headers(owner)
        )
        assert response.status_code == 200
        assert response.json()["status"] == status

    @pytest.mark.asyncio
    async def test_invalid_status(self, client, auth_headers, owner, project, make_task):
        task = await make_task(project)
        response = await client.patch(
            f"/api/v1/tasks/{task.id}/status", json={"status": "DONE"}, headers=auth_headers(owner)
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_delete_drops_edges(
        self, client, auth_headers, owner, project, make_task, session_factory
    ):
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        c = await make_task(project, "C")
        headers = auth_headers(owner)
        await client.post(_deps_url(a), json={"depends_on_id": str(b.id)}, headers=headers)
        await client.post(_deps_url(b), json={"depends_on_id": str(c.id)}, headers=headers)

        response = await client.delete(f"/api/v1/tasks/{b.id}", headers=headers)
        assert response.status_code == 204
        assert await _edges(session_factory, project) == []

        missing = await client.get(f"/api/v1/tasks/{b.id}", headers=headers)
        assert missing.status_code == 404


# ---------------------------------------------------------------------------
# Ownership and visibility
# ---------------------------------------------------------------------------


class TestTaskAccess:
    @pytest.mark.asyncio
    async def test_member_can_read_but_not_edit_others_task(
        self, client, auth_headers, make_user, project, make_task, add_member
    ):
        member = await make_user("USER")
        await add_member(project, member)
        task = await make_task(project)

        read = await client.get(f"/api/v1/tasks/{task.id}", headers=auth_headers(member))
        assert read.status_code == 200

        update = await client.put(
            f"/api/v1/tasks/{task.id}", json={"title": "Mine now"}, headers=auth_headers(member)
        )
        assert update.status_code == 403
        assert update.json()["error"]["code"] == "PERMISSION_DENIED"

        delete = await client.delete(f"/api/v1/tasks/{task.id}", headers=auth_headers(member))
        assert delete.status_code == 403

    @pytest.mark.asyncio
    async def test_creator_owns_their_task(
        self, client, auth_headers, make_user, project, add_member
    ):
        member = await make_user("USER")
        await add_member(project, member)
        created = await client.post(
            f"/api/v1/tasks/project/{project.id}", json={"title": "My task"}, headers=auth_headers(member)
        )
        task_id = created.json()["id"]

        response = await client.patch(
            f"/api/v1/tasks/{task_id}/status", json={"status": "IN_PROGRESS"}, headers=auth_headers(member)
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_project_owner_owns_every_task(
        self, client, auth_headers, make_user, owner, project, make_task, add_member
    ):
        member = await make_user("USER")
        await add_member(project, member)
        task = await make_task(project, created_by=member)
        response = await client.put(
            f"/api/v1/tasks/{task.id}", json={"title": "Owner edit"}, headers=auth_headers(owner)
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_manager_edits_any_task(self, client, auth_headers, make_user, project, make_task):
        manager = await make_user("MANAGER")
        task = await make_task(project)
        response = await client.put(
            f"/api/v1/tasks/{task.id}", json={"title": "Manager edit"}, headers=auth_headers(manager)
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_outsider_sees_404(self, client, auth_headers, make_user, project, make_task):
        outsider = await make_user("USER")
        task = await make_task(project)

        assert (await client.get(f"/api/v1/tasks/{task.id}", headers=auth_headers(outsider))).status_code == 404
        listing = await client.get(f"/api/v1/tasks/project/{project.id}", headers=auth_headers(outsider))
        assert listing.status_code == 404

    @pytest.mark.asyncio
    async def test_non_owner_cannot_add_dependency(
        self, client, auth_headers, make_user, project, make_task, add_member
    ):
        member = await make_user("USER")
        await add_member(project, member)
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        response = await client.post(
            _deps_url(a), json={"depends_on_id": str(b.id)}, headers=auth_headers(member)
        )
        assert response.status_code == 403


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


class TestDependencies:
    @pytest.mark.asyncio
    async def test_add_and_read_back(self, client, auth_headers, owner, project, make_task):
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        headers = auth_headers(owner)

        response = await client.post(_deps_url(a), json={"depends_on_id": str(b.id)}, headers=headers)
        assert response.status_code == 201
        assert response.json() == {
            "task_id": str(a.id),
            "depends_on_id": str(b.id),
            "project_id": str(project.id),
        }

        a_read = (await client.get(f"/api/v1/tasks/{a.id}", headers=headers)).json()
        b_read = (await client.get(f"/api/v1/tasks/{b.id}", headers=headers)).json()
        assert [d["id"] for d in a_read["dependencies"]] == [str(b.id)]
        assert [d["id"] for d in b_read["dependents"]] == [str(a.id)]

    @pytest.mark.asyncio
    async def test_circular_rejected(self, client, auth_headers, owner, project, make_task, session_factory):
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        c = await make_task(project, "C")
        headers = auth_headers(owner)
        await client.post(_deps_url(a), json={"depends_on_id": str(b.id)}, headers=headers)
        await client.post(_deps_url(b), json={"depends_on_id": str(c.id)}, headers=headers)
        before = await _edges(session_factory, project)

        response = await client.post(_deps_url(c), json={"depends_on_id": str(a.id)}, headers=headers)
        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "INVALID_OPERATION",
            "message": CIRCULAR_DEPENDENCY,
            "status": 400,
        }
        assert await _edges(session_factory, project) == before

    @pytest.mark.asyncio
    async def test_self_rejected(self, client, auth_headers, owner, project, make_task):
        a = await make_task(project, "A")
        response = await client.post(
            _deps_url(a), json={"depends_on_id": str(a.id)}, headers=auth_headers(owner)
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == SELF_DEPENDENCY

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(self, client, auth_headers, owner, project, make_task):
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        headers = auth_headers(owner)
        await client.post(_deps_url(a), json={"depends_on_id": str(b.id)}, headers=headers)

        response = await client.post(_deps_url(a), json={"depends_on_id": str(b.id)}, headers=headers)
        assert response.status_code == 409
        assert response.json()["error"]["message"] == DUPLICATE_DEPENDENCY

    @pytest.mark.asyncio
    async def test_cross_project_rejected(
        self, client, auth_headers, owner, project, make_project, make_task
    ):
        other = await make_project(owner, "Elsewhere")
        a = await make_task(project, "A")
        foreign = await make_task(other, "Foreign")
        response = await client.post(
            _deps_url(a), json={"depends_on_id": str(foreign.id)}, headers=auth_headers(owner)
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == CROSS_PROJECT

    @pytest.mark.asyncio
    async def test_missing_target(self, client, auth_headers, owner, project, make_task):
        a = await make_task(project, "A")
        response = await client.post(
            _deps_url(a), json={"depends_on_id": str(uuid.uuid4())}, headers=auth_headers(owner)
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_remove_then_add_reverse(
        self, client, auth_headers, owner, project, make_task, session_factory
    ):
        t1 = await make_task(project, "T1")
        t2 = await make_task(project, "T2")
        t3 = await make_task(project, "T3")
        headers = auth_headers(owner)
        await client.post(_deps_url(t2), json={"depends_on_id": str(t1.id)}, headers=headers)
        await client.post(_deps_url(t3), json={"depends_on_id": str(t2.id)}, headers=headers)

        blocked = await client.post(_deps_url(t1), json={"depends_on_id": str(t3.id)}, headers=headers)
        assert blocked.status_code == 400

        removed = await client.delete(_deps_url(t2, t1), headers=headers)
        assert removed.status_code == 204

        allowed = await client.post(_deps_url(t1), json={"depends_on_id": str(t3.id)}, headers=headers)
        assert allowed.status_code == 201
        assert await _edges(session_factory, project) == sorted([(t1.id, t3.id), (t3.id, t2.id)])

    @pytest.mark.asyncio
    async def test_remove_absent_edge(self, client, auth_headers, owner, project, make_task):
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        response = await client.delete(_deps_url(a, b), headers=auth_headers(owner))
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Dependency not found"

    @pytest.mark.asyncio
    async def test_concurrent_opposite_edges(
        self, client, auth_headers, owner, project, make_task, session_factory
    ):
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        headers = auth_headers(owner)

        responses = await asyncio.gather(
            client.post(_deps_url(a), json={"depends_on_id": str(b.id)}, headers=headers),
            client.post(_deps_url(b), json={"depends_on_id": str(a.id)}, headers=headers),
        )
        assert sorted(r.status_code for r in responses) == [201, 400]
        rejected = next(r for r in responses if r.status_code == 400)
        assert rejected.json()["error"]["message"] == CIRCULAR_DEPENDENCY
        assert len(await _edges(session_factory, project)) == 1

    @pytest.mark.asyncio
    async def test_storage_outage_is_503(self, client, auth_headers, owner, project, make_task):
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        outage = OperationalError("SELECT 1", {}, Exception("connection refused"))
        with patch("app.services.tasks.load_project_graph", AsyncMock(side_effect=outage)):
            response = await client.post(
                _deps_url(a), json={"depends_on_id": str(b.id)}, headers=auth_headers(owner)
            )
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"
        assert response.headers["Retry-After"] == "5"


class TestStorageErrors:
    @pytest.mark.asyncio
    async def test_operational_error_becomes_infrastructure_error(self, session):
        with pytest.raises(InfrastructureError):
            async with storage_errors(session):
                raise OperationalError("SELECT 1", {}, Exception("timeout"))

    @pytest.mark.asyncio
    async def test_integrity_error_becomes_generic_conflict(self, session):
        with pytest.raises(Conflict, match=CONCURRENT_CHANGE):
            async with storage_errors(session):
                raise IntegrityError("DELETE", {}, Exception("FOREIGN KEY constraint failed"))

    @pytest.mark.asyncio
    async def test_edge_key_violation_reports_duplicate(self, session):
        with pytest.raises(Conflict, match=DUPLICATE_DEPENDENCY):
            async with storage_errors(session, DUPLICATE_DEPENDENCY):
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self, session):
        with pytest.raises(ValueError):
            async with storage_errors(session):
                raise ValueError("not storage")

    @pytest.mark.asyncio
    async def test_delete_conflict_is_not_reported_as_duplicate_edge(
        self, session, make_user, make_project, make_task
    ):
        owner = await make_user()
        project = await make_project(owner)
        task = await make_task(project)
        loaded = await session.get(Task, task.id)

        fk_failure = IntegrityError("DELETE", {}, Exception("FOREIGN KEY constraint failed"))
        with patch.object(session, "commit", AsyncMock(side_effect=fk_failure)):
            with pytest.raises(Conflict) as exc_info:
                await delete_task(session, loaded)
        assert exc_info.value.message == CONCURRENT_CHANGE
