"""
Tests for project endpoints: CRUD, visibility, statistics and membership.
"""

from __future__ import annotations

import asyncio
import uuid

import pytest
from sqlmodel import select

from app.core.locks import ProjectLockRegistry
from app.models.dependency import TaskDependency
from app.models.project import Project
from app.models.task import Task
from app.services.projects import delete_project
from ccpm_shared.schemas.projects import completion_rate


class TestProjectCrud:
    @pytest.mark.asyncio
    async def test_create_sets_owner_and_defaults(self, client, make_user, auth_headers):
        user = await make_user()
        response = await client.post(
            "/api/v1/projects", json={"name": "Harbour wall"}, headers=auth_headers(user)
        )
        assert response.status_code == 201
        body = response.json()
        assert body["owner_id"] == str(user.id)
        assert body["status"] == "PLANNING"
        assert body["task_count"] == 0
        assert body["is_archived"] is False

    @pytest.mark.asyncio
    async def test_create_with_unknown_organization(self, client, make_user, auth_headers):
        user = await make_user()
        response = await client.post(
            "/api/v1/projects",
            json={"name": "Orphan", "organization_id": str(uuid.uuid4())},
            headers=auth_headers(user),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_create_requires_auth(self, client):
        response = await client.post("/api/v1/projects", json={"name": "Anon"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_owner_updates(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        project = await make_project(owner)
        response = await client.put(
            f"/api/v1/projects/{project.id}",
            json={"status": "IN_PROGRESS", "description": "Phase one"},
            headers=auth_headers(owner),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "IN_PROGRESS"
        assert response.json()["description"] == "Phase one"

    @pytest.mark.asyncio
    async def test_member_cannot_update(self, client, make_user, make_project, add_member, auth_headers):
        owner = await make_user()
        member = await make_user()
        project = await make_project(owner)
        await add_member(project, member)
        response = await client.put(
            f"/api/v1/projects/{project.id}", json={"name": "Hijacked"}, headers=auth_headers(member)
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_manager_updates_any(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        manager = await make_user("MANAGER")
        project = await make_project(owner)
        response = await client.put(
            f"/api/v1/projects/{project.id}", json={"name": "Managed"}, headers=auth_headers(manager)
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_delete_cascades(
        self, client, make_user, make_project, make_task, auth_headers, session_factory
    ):
        owner = await make_user()
        project = await make_project(owner)
        a = await make_task(project, "A")
        b = await make_task(project, "B")
        await client.post(
            f"/api/v1/tasks/{a.id}/dependencies",
            json={"depends_on_id": str(b.id)},
            headers=auth_headers(owner),
        )

        response = await client.delete(f"/api/v1/projects/{project.id}", headers=auth_headers(owner))
        assert response.status_code == 204

        async with session_factory() as s:
            assert (await s.execute(select(Task).where(Task.project_id == project.id))).all() == []
            assert (await s.execute(select(TaskDependency))).all() == []
        missing = await client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(owner))
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_waits_for_the_project_lock(
        self, session, session_factory, make_user, make_project, make_task
    ):
        owner = await make_user()
        project = await make_project(owner)
        await make_task(project)
        loaded = await session.get(Project, project.id)
        locks = ProjectLockRegistry()

        async with locks.hold(project.id):
            deletion = asyncio.create_task(delete_project(session, loaded, locks))
            await asyncio.sleep(0.05)
            assert not deletion.done()
        await deletion

        async with session_factory() as s:
            assert await s.get(Project, project.id) is None
            assert (await s.execute(select(Task).where(Task.project_id == project.id))).all() == []


class TestVisibility:
    @pytest.mark.asyncio
    async def test_user_lists_owned_and_member_projects(
        self, client, make_user, make_project, add_member, auth_headers
    ):
        me = await make_user()
        other = await make_user()
        mine = await make_project(me, "Mine")
        shared = await make_project(other, "Shared")
        await make_project(other, "Hidden")
        await add_member(shared, me)

        response = await client.get("/api/v1/projects", headers=auth_headers(me))
        assert response.status_code == 200
        names = {p["name"] for p in response.json()["data"]}
        assert names == {"Mine", "Shared"}
        assert response.json()["pagination"]["total"] == 2
        assert mine.id

    @pytest.mark.asyncio
    async def test_manager_lists_everything(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        manager = await make_user("MANAGER")
        await make_project(owner, "One")
        await make_project(owner, "Two")
        response = await client.get("/api/v1/projects", headers=auth_headers(manager))
        assert response.json()["pagination"]["total"] == 2

    @pytest.mark.asyncio
    async def test_invisible_project_is_404(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        outsider = await make_user()
        project = await make_project(owner)
        response = await client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(outsider))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_search_and_archive_filters(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        await make_project(owner, "Canal lock")
        archived = await make_project(owner, "Canal bridge")
        headers = auth_headers(owner)
        await client.put(f"/api/v1/projects/{archived.id}", json={"is_archived": True}, headers=headers)

        active = await client.get("/api/v1/projects", params={"search": "canal"}, headers=headers)
        assert [p["name"] for p in active.json()["data"]] == ["Canal lock"]

        everything = await client.get(
            "/api/v1/projects", params={"search": "canal", "include_archived": True}, headers=headers
        )
        assert everything.json()["pagination"]["total"] == 2


class TestStatistics:
    def test_completion_rate_of_empty_project(self):
        assert completion_rate(0, 0) == 0.0

    @pytest.mark.asyncio
    async def test_statistics(self, client, make_user, make_project, make_task, auth_headers):
        owner = await make_user()
        project = await make_project(owner)
        headers = auth_headers(owner)
        tasks = [await make_task(project, f"T{i}") for i in range(4)]
        await client.patch(f"/api/v1/tasks/{tasks[0].id}/status", json={"status": "COMPLETED"}, headers=headers)
        await client.patch(f"/api/v1/tasks/{tasks[1].id}/status", json={"status": "IN_PROGRESS"}, headers=headers)

        response = await client.get(f"/api/v1/projects/{project.id}/statistics", headers=headers)
        assert response.status_code == 200
        assert response.json() == {
            "total_tasks": 4,
            "completed_tasks": 1,
            "in_progress_tasks": 1,
            "todo_tasks": 2,
            "completion_rate": 25.0,
        }


class TestMembership:
    @pytest.mark.asyncio
    async def test_add_list_remove(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        member = await make_user()
        project = await make_project(owner)
        headers = auth_headers(owner)

        added = await client.post(
            f"/api/v1/projects/{project.id}/members",
            json={"user_ids": [str(member.id), str(member.id)]},
            headers=headers,
        )
        assert added.status_code == 201
        assert [m["user_id"] for m in added.json()] == [str(member.id)]

        again = await client.post(
            f"/api/v1/projects/{project.id}/members", json={"user_ids": [str(member.id)]}, headers=headers
        )
        assert len(again.json()) == 1

        removed = await client.delete(f"/api/v1/projects/{project.id}/members/{member.id}", headers=headers)
        assert removed.status_code == 204
        listing = await client.get(f"/api/v1/projects/{project.id}/members", headers=headers)
        assert listing.json() == []

    @pytest.mark.asyncio
    async def test_add_unknown_user(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        project = await make_project(owner)
        response = await client.post(
            f"/api/v1/projects/{project.id}/members",
            json={"user_ids": [str(uuid.uuid4())]},
            headers=auth_headers(owner),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_owner_cannot_be_removed(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        project = await make_project(owner)
        response = await client.delete(
            f"/api/v1/projects/{project.id}/members/{owner.id}", headers=auth_headers(owner)
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_remove_non_member(self, client, make_user, make_project, auth_headers):
        owner = await make_user()
        stranger = await make_user()
        project = await make_project(owner)
        response = await client.delete(
            f"/api/v1/projects/{project.id}/members/{stranger.id}", headers=auth_headers(owner)
        )
        assert response.status_code == 404
