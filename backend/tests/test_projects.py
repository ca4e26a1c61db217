# tests/test_projects.py — Projects: keys, member writes, associations
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import AuditLog, AuditEventType, Issue, IssueStatus, ProjectStatus, UserRole
from permissions import Capability
from routers import projects as projects_router
from tests.conftest import create_project, create_user, get_auth_headers


@pytest.mark.asyncio
class TestCreateProject:
    async def test_create_defaults_lead_and_members_to_caller(self, client: AsyncClient, manager_user):
        res = await client.post("/api/v1/projects", headers=get_auth_headers(manager_user), json={
            "name": "Mobile App",
            "key": " mob1 ",
        })
        assert res.status_code == 201
        data = res.json()
        assert data["key"] == "MOB1"
        assert data["status"] == "active"
        assert data["color"] == "#6366f1"
        assert data["lead"]["id"] == manager_user.id
        assert [m["id"] for m in data["members"]] == [manager_user.id]
        assert data["issue_count"] == 0

    async def test_invalid_key(self, client: AsyncClient, admin_user):
        for key in ("1ABC", "AB-C", "ABCDEFGHIJK"):
            res = await client.post("/api/v1/projects", headers=get_auth_headers(admin_user), json={
                "name": "Bad key",
                "key": key,
            })
            assert res.status_code == 400
            assert res.json()["detail"]["field"] == "key"

    async def test_duplicate_key_conflicts(self, client: AsyncClient, admin_user, test_project):
        res = await client.post("/api/v1/projects", headers=get_auth_headers(admin_user), json={
            "name": "Another web",
            "key": "web",
        })
        assert res.status_code == 409
        assert res.json()["detail"]["field"] == "key"

    async def test_same_key_in_other_company(self, client: AsyncClient, other_admin, test_project):
        res = await client.post("/api/v1/projects", headers=get_auth_headers(other_admin), json={
            "name": "Globex web",
            "key": "WEB",
        })
        assert res.status_code == 201

    async def test_any_member_can_create(self, client: AsyncClient, db_session, test_company):
        # Project writes ignore role and capability flags alike
        bare_manager = await create_user(
            db_session, test_company, "bare@acme.io", UserRole.MANAGER,
            permissions={cap.value: False for cap in Capability},
        )
        plain_viewer = await create_user(db_session, test_company, "plain@acme.io", UserRole.VIEWER)
        for user, key in ((bare_manager, "SIDE"), (plain_viewer, "SIDE2")):
            res = await client.post("/api/v1/projects", headers=get_auth_headers(user), json={
                "name": "Side project",
                "key": key,
            })
            assert res.status_code == 201

    async def test_lost_key_race_is_field_scoped_conflict(
        self, client: AsyncClient, monkeypatch, admin_user, test_project
    ):
        async def skip_precheck(*args, **kwargs):
            return None

        monkeypatch.setattr(projects_router, "ensure_unique_project_key", skip_precheck)
        res = await client.post("/api/v1/projects", headers=get_auth_headers(admin_user), json={
            "name": "Second web",
            "key": "WEB",
        })
        assert res.status_code == 409
        assert res.json()["detail"]["field"] == "key"

    async def test_audit_row_carries_request_id(self, client: AsyncClient, db_session, admin_user):
        res = await client.post(
            "/api/v1/projects",
            headers={**get_auth_headers(admin_user), "X-Request-ID": "req-proj-1"},
            json={"name": "Traced", "key": "TRC"},
        )
        assert res.status_code == 201

        audit = (await db_session.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEventType.PROJECT_CREATED)
        )).scalar_one()
        assert audit.request_id == "req-proj-1"
        assert audit.resource_id == res.json()["id"]

    async def test_cross_tenant_lead_rejected(self, client: AsyncClient, admin_user, other_admin):
        res = await client.post("/api/v1/projects", headers=get_auth_headers(admin_user), json={
            "name": "Borrowed lead",
            "key": "BL",
            "lead_id": other_admin.id,
        })
        assert res.status_code == 400
        assert res.json()["detail"]["field"] == "lead_id"

    async def test_cross_tenant_member_rejected(self, client: AsyncClient, admin_user, developer_user, other_admin):
        res = await client.post("/api/v1/projects", headers=get_auth_headers(admin_user), json={
            "name": "Mixed team",
            "key": "MIX",
            "member_ids": [developer_user.id, other_admin.id],
        })
        assert res.status_code == 400
        assert res.json()["detail"]["field"] == "member_ids"

    async def test_end_before_start_rejected(self, client: AsyncClient, admin_user):
        res = await client.post("/api/v1/projects", headers=get_auth_headers(admin_user), json={
            "name": "Backwards",
            "key": "BACK",
            "start_date": "2026-05-01T00:00:00Z",
            "end_date": "2026-04-01T00:00:00Z",
        })
        assert res.status_code == 400


@pytest.mark.asyncio
class TestReadProjects:
    async def test_list_scoped_with_counts(
        self, client: AsyncClient, db_session, developer_user, test_project, other_project
    ):
        db_session.add_all([
            Issue(company_id=test_project.company_id, project_id=test_project.id,
                  title="Open one", description="d", reporter_id=developer_user.id),
            Issue(company_id=test_project.company_id, project_id=test_project.id,
                  title="Closed one", description="d", status=IssueStatus.CLOSED, reporter_id=developer_user.id),
        ])
        await db_session.commit()

        res = await client.get("/api/v1/projects", headers=get_auth_headers(developer_user))
        assert res.status_code == 200
        projects = res.json()
        assert [p["id"] for p in projects] == [test_project.id]
        assert projects[0]["issue_count"] == 2
        assert projects[0]["open_issue_count"] == 1

    async def test_get_other_company_project_is_404(self, client: AsyncClient, admin_user, other_project):
        res = await client.get(f"/api/v1/projects/{other_project.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 404

    async def test_filter_by_status(self, client: AsyncClient, db_session, admin_user, test_company, test_project):
        archived = await create_project(db_session, test_company, "OLD", lead=admin_user)
        archived.status = ProjectStatus.ARCHIVED
        db_session.add(archived)
        await db_session.commit()

        res = await client.get("/api/v1/projects?status=archived", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert [p["key"] for p in res.json()] == ["OLD"]


@pytest.mark.asyncio
class TestUpdateProject:
    async def test_keeping_own_key_is_fine(self, client: AsyncClient, admin_user, test_project):
        res = await client.put(f"/api/v1/projects/{test_project.id}", headers=get_auth_headers(admin_user), json={
            "key": "web",
            "name": "Website",
        })
        assert res.status_code == 200
        assert res.json()["key"] == "WEB"
        assert res.json()["name"] == "Website"

    async def test_taking_another_key_conflicts(
        self, client: AsyncClient, db_session, admin_user, test_company, test_project
    ):
        await create_project(db_session, test_company, "API", lead=admin_user)
        res = await client.put(f"/api/v1/projects/{test_project.id}", headers=get_auth_headers(admin_user), json={
            "key": "API",
        })
        assert res.status_code == 409

    async def test_update_other_company_project_is_404(self, client: AsyncClient, admin_user, other_project):
        res = await client.put(f"/api/v1/projects/{other_project.id}", headers=get_auth_headers(admin_user), json={
            "name": "Mine now",
        })
        assert res.status_code == 404

    async def test_any_member_can_update(self, client: AsyncClient, viewer_user, test_project):
        res = await client.put(f"/api/v1/projects/{test_project.id}", headers=get_auth_headers(viewer_user), json={
            "name": "Renamed by viewer",
        })
        assert res.status_code == 200
        assert res.json()["name"] == "Renamed by viewer"

    async def test_lost_key_race_on_update(
        self, client: AsyncClient, db_session, monkeypatch, admin_user, developer_user, test_company, test_project
    ):
        api = await create_project(db_session, test_company, "API", lead=admin_user)

        async def skip_precheck(*args, **kwargs):
            return None

        monkeypatch.setattr(projects_router, "ensure_unique_project_key", skip_precheck)
        res = await client.put(f"/api/v1/projects/{api.id}", headers=get_auth_headers(admin_user), json={
            "key": "WEB",
            "member_ids": [developer_user.id],
        })
        assert res.status_code == 409
        assert res.json()["detail"]["field"] == "key"

    async def test_replace_members(self, client: AsyncClient, admin_user, developer_user, qa_user, test_project):
        res = await client.put(f"/api/v1/projects/{test_project.id}", headers=get_auth_headers(admin_user), json={
            "member_ids": [developer_user.id, qa_user.id, developer_user.id],
        })
        assert res.status_code == 200
        assert [m["id"] for m in res.json()["members"]] == [developer_user.id, qa_user.id]


@pytest.mark.asyncio
class TestDeleteAndArchive:
    async def test_delete_blocked_by_issues(self, client: AsyncClient, db_session, admin_user, test_project):
        db_session.add(Issue(
            company_id=test_project.company_id, project_id=test_project.id,
            title="Blocker", description="d", reporter_id=admin_user.id,
        ))
        await db_session.commit()

        res = await client.delete(f"/api/v1/projects/{test_project.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 400
        assert "1 existing issue(s)" in res.json()["detail"]["message"]

    async def test_delete_empty_project(self, client: AsyncClient, admin_user, test_project):
        res = await client.delete(f"/api/v1/projects/{test_project.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        res = await client.get(f"/api/v1/projects/{test_project.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 404

    async def test_archive_toggle(self, client: AsyncClient, manager_user, test_project):
        headers = get_auth_headers(manager_user)
        res = await client.patch(f"/api/v1/projects/{test_project.id}/archive", headers=headers)
        assert res.status_code == 200
        assert res.json()["status"] == "archived"
        res = await client.patch(f"/api/v1/projects/{test_project.id}/archive", headers=headers)
        assert res.json()["status"] == "active"
