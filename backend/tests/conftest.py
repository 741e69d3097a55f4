import os

# Point the app at an in-memory database and a routing host that only the
# mock transports answer, before anything from ridedispatch is imported.
os.environ["SQLITE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "local"
os.environ["OSRM_BASE_URL"] = "http://osrm.test"

from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from ridedispatch.core.db import engine, init_db
from ridedispatch.main import app
from ridedispatch.models import Tenant
from tests.utils.fleet import create_random_tenant
from tests.utils.osrm import line_osrm_handler


@pytest.fixture
def db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        init_db(session)
        yield session
    with Session(engine) as session:
        for table in reversed(SQLModel.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()


@pytest.fixture
def client(db: Session) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        app.state.osrm.client = httpx.AsyncClient(
            transport=httpx.MockTransport(line_osrm_handler)
        )
        yield c


@pytest.fixture
def tenant(db: Session) -> Tenant:
    return create_random_tenant(db)


@pytest.fixture
def tenant_headers(tenant: Tenant) -> dict[str, str]:
    return {"X-Tenant-ID": str(tenant.id)}
