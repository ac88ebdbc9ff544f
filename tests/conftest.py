import os
import sys
import tempfile
from pathlib import Path

import pytest

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# La DB se configura al importar gestor_atenciones.db: el entorno va antes del import
_TMP_DIR = Path(tempfile.mkdtemp(prefix="gestor_atenciones_tests_"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.sqlite'}"
os.environ["SEED_DEMO"] = "false"

from fastapi.testclient import TestClient  # noqa: E402

from gestor_atenciones.api_main import app  # noqa: E402
from gestor_atenciones.auth_service import crear_usuario  # noqa: E402
from gestor_atenciones.db import Base, engine  # noqa: E402
from gestor_atenciones.services import crear_doctor, crear_item  # noqa: E402


@pytest.fixture(autouse=True)
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def client():
    return TestClient(app)


@pytest.fixture()
def auth_headers(client):
    crear_usuario("tecnico", "1234")
    r = client.post("/api/auth/login", data={"username": "tecnico", "password": "1234"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture()
def catalogo():
    """Un doctor, dos estudios simples y un combo que los agrupa."""
    doctor = crear_doctor("Dra. Gómez", "GOMEZ_MARIA_J", email="dgomez@clinic.com")
    topo = crear_item("TOPOGRAFÍA CORNEAL")
    paqui = crear_item("PAQUIMETRÍA")
    combo = crear_item("PANEL CORNEAL", sub_items=[topo["id"], paqui["id"]])
    return {"doctor": doctor, "topo": topo, "paqui": paqui, "combo": combo}
