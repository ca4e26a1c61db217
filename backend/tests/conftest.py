# tests/conftest.py — Shared test fixtures
import os
import uuid
from typing import Optional, Dict

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import Base, Company, Project, User, UserRole, UserStatus
from auth import AuthService
from database import get_db_session
from main import app
from permissions import seed_capabilities

TEST_PASSWORD = "TestPassword123!"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# FACTORIES
# ============================================================

async def create_company(db: AsyncSession, name: str, email: str) -> Company:
    company = Company(id=str(uuid.uuid4()), name=name, email=email)
    db.add(company)
    await db.commit()
    await db.refresh(company)
    return company


async def create_user(
    db: AsyncSession,
    company: Company,
    email: str,
    role: UserRole = UserRole.VIEWER,
    name: str = "Test User",
    permissions: Optional[Dict[str, bool]] = None,
    status: UserStatus = UserStatus.ACTIVE,
) -> User:
    """A user with the role's default capabilities, optionally overridden"""
    user = User(
        id=str(uuid.uuid4()),
        company_id=company.id,
        name=name,
        email=email,
        password_hash=AuthService.hash_password(TEST_PASSWORD),
        role=UserRole(role),
        status=status,
    )
    seed_capabilities(role, permissions).apply_to(user)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(AuthService.claims_for(user))
    return {"Authorization": f"Bearer {token}"}


# ============================================================
# COMPANIES AND USERS
# ============================================================

@pytest_asyncio.fixture
async def test_company(db_session):
    return await create_company(db_session, "Acme Corp", "owner@acme.io")


@pytest_asyncio.fixture
async def other_company(db_session):
    return await create_company(db_session, "Globex", "owner@globex.io")


@pytest_asyncio.fixture
async def admin_user(db_session, test_company):
    """Owner of the test company"""
    user = await create_user(db_session, test_company, "owner@acme.io", UserRole.ADMIN, name="Acme Owner")
    test_company.owner_id = user.id
    db_session.add(test_company)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def manager_user(db_session, test_company):
    return await create_user(db_session, test_company, "manager@acme.io", UserRole.MANAGER, name="Acme Manager")


@pytest_asyncio.fixture
async def developer_user(db_session, test_company):
    return await create_user(db_session, test_company, "dev@acme.io", UserRole.DEVELOPER, name="Acme Dev")


@pytest_asyncio.fixture
async def qa_user(db_session, test_company):
    return await create_user(db_session, test_company, "qa@acme.io", UserRole.QA, name="Acme QA")


@pytest_asyncio.fixture
async def viewer_user(db_session, test_company):
    return await create_user(db_session, test_company, "viewer@acme.io", UserRole.VIEWER, name="Acme Viewer")


@pytest_asyncio.fixture
async def other_admin(db_session, other_company):
    """Owner of the other company"""
    user = await create_user(db_session, other_company, "owner@globex.io", UserRole.ADMIN, name="Globex Owner")
    other_company.owner_id = user.id
    db_session.add(other_company)
    await db_session.commit()
    return user


# ============================================================
# PROJECTS
# ============================================================

async def create_project(db: AsyncSession, company: Company, key: str, lead: Optional[User] = None) -> Project:
    project = Project(
        id=str(uuid.uuid4()),
        company_id=company.id,
        name=f"Project {key}",
        key=key,
        lead_id=lead.id if lead else None,
        member_ids=[lead.id] if lead else [],
    )
    db.add(project)
    await db.commit()
    await db.refresh(project)
    return project


@pytest_asyncio.fixture
async def test_project(db_session, test_company, admin_user):
    return await create_project(db_session, test_company, "WEB", lead=admin_user)


@pytest_asyncio.fixture
async def other_project(db_session, other_company, other_admin):
    return await create_project(db_session, other_company, "GLX", lead=other_admin)
