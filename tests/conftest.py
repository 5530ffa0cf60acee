from __future__ import annotations

import copy
import json
import posixpath
import threading
import time

import pytest

from app import create_app
from config import FtpConfig
from km_errors import TransportError
from km_store import RecordStore
from write_queue import WriteQueue


class MemoryTransport:
    """FtpTransport en memoire: meme contrat (None si absent), latence optionnelle."""

    def __init__(self, config: FtpConfig, delay: float = 0.0):
        self.config = config
        self.delay = delay
        self.files: dict[str, str] = {}
        self.failing: set[str] = set()
        self.gates: dict[str, threading.Event] = {}
        self.reads: list[str] = []
        self.writes: list[str] = []
        self._lock = threading.Lock()

    def _io(self, path: str) -> None:
        if path in self.failing:
            raise TransportError(f"FTP read {path}: 421 timeout")
        gate = self.gates.get(path)
        if gate is not None:
            gate.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)

    def read_json(self, path):
        self._io(path)
        with self._lock:
            self.reads.append(path)
            raw = self.files.get(path)
        if raw is None or not raw.strip():
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def write_json(self, path, data):
        self._io(path)
        with self._lock:
            self.writes.append(path)
            self.files[path] = json.dumps(data, ensure_ascii=False, indent=2) + "\n"

    def load(self, path):
        return json.loads(self.files[path])

    def seed(self, path, data):
        self.files[path] = json.dumps(copy.deepcopy(data))

    def ensure_dir(self, path):
        return None

    def list_dirs(self, path):
        prefix = path.rstrip("/") + "/"
        return sorted({p[len(prefix):].split("/")[0] for p in self.files if p.startswith(prefix) and "/" in p[len(prefix):]})

    def list_files(self, path):
        return sorted(posixpath.basename(p) for p in self.files if posixpath.dirname(p) == path)

    def modified_at(self, path):
        return "2026-02-18T08:30:00Z" if path in self.files else None


@pytest.fixture
def ftp_config():
    return FtpConfig(host="ftp.test", user="km", password="secret", base_dir="/kilometrage")


@pytest.fixture
def transport(ftp_config):
    return MemoryTransport(ftp_config)


@pytest.fixture
def store(transport, ftp_config):
    return RecordStore(transport, WriteQueue(), horaires=ftp_config.horaires)


@pytest.fixture
def app(store):
    app = create_app(
        {"TESTING": True, "RATELIMIT_ENABLED": False, "KM_LOG_FILE": None, "ADMIN_API_KEY": "admin-key"},
        store=store,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def reading(**overrides):
    payload = {
        "agence": "Gleize",
        "codeAgence": "GLEIZE",
        "tournee": "Tournee 1",
        "codeTournee": "T1",
        "chauffeur": "Dupont J.",
        "codeChauffeur": "DJ",
        "date": "2026-02-18",
        "km": 12345,
        "horaire": "8h",
        "commentaire": "",
        "id": "T1-001",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_reading():
    return reading
