import os
import tempfile

import pytest

# The engine is created at import time of ``repo``, so point it at a
# throwaway SQLite file before any test module imports it.
_DB_DIR = tempfile.mkdtemp(prefix="catalog-tests-")
os.environ.setdefault("CATALOG_DATABASE_URL", f"sqlite:///{os.path.join(_DB_DIR, 'catalog.db')}")


@pytest.fixture
def catalog_db():
    import repo

    repo.Base.metadata.drop_all(repo.engine)
    repo.init_db()
    yield repo
    repo.Base.metadata.drop_all(repo.engine)


@pytest.fixture
def api(catalog_db):
    from fastapi.testclient import TestClient

    import main

    # no context manager: the startup hook waits for Postgres
    return TestClient(main.app)
