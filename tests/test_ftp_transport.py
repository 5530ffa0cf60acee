from __future__ import annotations

import ftplib
import glob
import os
import posixpath
import tempfile

import pytest

from config import FtpConfig
from ftp_transport import FtpTransport
from km_errors import ConfigurationError, TransportError


class FakeFTP:
    """Serveur FTP minimal en memoire, partage entre connexions."""

    files: dict = {}
    dirs: set = set()
    log: list = []
    fail_with = None
    mlsd_supported = True

    def __init__(self, timeout=None):
        self.timeout = timeout
        self.closed = False

    @classmethod
    def reset(cls):
        cls.files, cls.dirs, cls.log = {}, {"/"}, []
        cls.fail_with = None
        cls.mlsd_supported = True

    def connect(self, host, port):
        self.log.append(("connect", host, port, self.timeout))

    def login(self, user, password):
        if self.fail_with is not None:
            raise self.fail_with

    def retrbinary(self, cmd, callback):
        path = cmd.split(" ", 1)[1]
        if path not in self.files:
            raise ftplib.error_perm("550 No such file or directory")
        callback(self.files[path])

    def storbinary(self, cmd, fh):
        path = cmd.split(" ", 1)[1]
        if posixpath.dirname(path) not in self.dirs:
            raise ftplib.error_perm("553 Could not create file")
        self.files[path] = fh.read()

    def mkd(self, path):
        if path in self.dirs:
            raise ftplib.error_perm("550 File exists")
        self.dirs.add(path)
        self.log.append(("mkd", path))
        return path

    def cwd(self, path):
        if path not in self.dirs:
            raise ftplib.error_perm("550 No such directory")

    def mlsd(self, path, facts=()):
        if not self.mlsd_supported:
            raise ftplib.error_perm("500 Unknown command")
        if path not in self.dirs:
            raise ftplib.error_perm("550 No such directory")
        for d in sorted(self.dirs):
            if posixpath.dirname(d) == path and d != path:
                yield posixpath.basename(d), {"type": "dir"}
        for f in sorted(self.files):
            if posixpath.dirname(f) == path:
                yield posixpath.basename(f), {"type": "file"}

    def nlst(self, path):
        if path not in self.dirs:
            raise ftplib.error_perm("550 No such directory")
        children = [d for d in self.dirs if posixpath.dirname(d) == path and d != path]
        children += [f for f in self.files if posixpath.dirname(f) == path]
        return sorted(children)

    def voidcmd(self, cmd):
        path = cmd.split(" ", 1)[1]
        if path not in self.files:
            raise ftplib.error_perm("550 No such file")
        return "213 20260218083000"

    def quit(self):
        self.closed = True
        self.log.append(("quit",))

    def close(self):
        self.closed = True


@pytest.fixture
def fake_ftp(monkeypatch):
    FakeFTP.reset()
    monkeypatch.setattr(ftplib, "FTP", FakeFTP)
    return FakeFTP


@pytest.fixture
def ftp(fake_ftp):
    return FtpTransport(FtpConfig(host="ftp.test", user="km", password="secret", base_dir="/kilometrage", timeout=7))


def _scratch_files():
    return set(glob.glob(os.path.join(tempfile.gettempdir(), "km_*")))


def test_read_missing_file_is_none(ftp, fake_ftp):
    before = _scratch_files()
    assert ftp.read_json("/kilometrage/GLEIZE/2026-02.json") is None
    assert _scratch_files() == before
    assert ("connect", "ftp.test", 21, 7) in fake_ftp.log
    assert ("quit",) in fake_ftp.log


@pytest.mark.parametrize(
    "payload",
    [b"", b"   \n", b'[{"km": 1', b"not json", b'[{"a": "\xff\xfe"}]', b"\xff\xfe garbage"],
)
def test_read_empty_or_damaged_is_none(ftp, fake_ftp, payload):
    fake_ftp.files["/kilometrage/params.json"] = payload
    assert ftp.read_json("/kilometrage/params.json") is None


def test_write_creates_dirs_and_round_trips(ftp, fake_ftp):
    before = _scratch_files()
    data = [{"agence": "Chassé", "km": 12345, "horaire": None}]
    ftp.write_json("/kilometrage/CHASSE/2026-02.json", data)

    assert ("mkd", "/kilometrage") in fake_ftp.log
    assert ("mkd", "/kilometrage/CHASSE") in fake_ftp.log
    raw = fake_ftp.files["/kilometrage/CHASSE/2026-02.json"]
    assert raw.endswith(b"\n")
    assert "Chassé".encode("utf-8") in raw
    assert ftp.read_json("/kilometrage/CHASSE/2026-02.json") == data
    assert _scratch_files() == before


def test_write_overwrites_existing(ftp, fake_ftp):
    ftp.write_json("/kilometrage/params.json", [1])
    ftp.write_json("/kilometrage/params.json", [1, 2])
    assert ftp.read_json("/kilometrage/params.json") == [1, 2]


def test_upload_failure_is_transport_error_and_cleans_up(ftp, fake_ftp, monkeypatch):
    def refuse(self, path):
        raise ftplib.error_perm("550 Permission denied")

    monkeypatch.setattr(FakeFTP, "mkd", refuse)
    before = _scratch_files()
    with pytest.raises(TransportError):
        ftp.write_json("/kilometrage/GLEIZE/2026-02.json", [])
    assert _scratch_files() == before


def test_connection_failure_is_transport_error(ftp, fake_ftp):
    fake_ftp.fail_with = ftplib.error_perm("530 Login incorrect")
    with pytest.raises(TransportError):
        ftp.read_json("/kilometrage/params.json")


def test_timeout_is_transport_error(ftp, fake_ftp):
    fake_ftp.fail_with = TimeoutError("timed out")
    with pytest.raises(TransportError):
        ftp.write_json("/kilometrage/params.json", [])


def test_missing_credentials_is_configuration_error(fake_ftp):
    ftp = FtpTransport(FtpConfig(host="ftp.test", user="", password=""))
    with pytest.raises(ConfigurationError):
        ftp.read_json("/kilometrage/params.json")
    assert fake_ftp.log == []


def test_listing(ftp, fake_ftp):
    ftp.write_json("/kilometrage/GLEIZE/2026-02.json", [])
    ftp.write_json("/kilometrage/GLEIZE/2026-03.json", [])
    ftp.write_json("/kilometrage/BELLEVILLE/2026-01.json", [])
    ftp.write_json("/kilometrage/params.json", [])

    assert ftp.list_dirs("/kilometrage") == ["BELLEVILLE", "GLEIZE"]
    assert ftp.list_files("/kilometrage/GLEIZE") == ["2026-02.json", "2026-03.json"]
    assert ftp.list_dirs("/absent") == []
    assert ftp.list_files("/kilometrage/NOWHERE") == []

    fake_ftp.mlsd_supported = False
    assert ftp.list_dirs("/kilometrage") == ["BELLEVILLE", "GLEIZE"]


def test_modified_at_and_ensure_dir(ftp, fake_ftp):
    assert ftp.modified_at("/kilometrage/params.json") is None
    ftp.write_json("/kilometrage/params.json", [])
    assert ftp.modified_at("/kilometrage/params.json") == "2026-02-18T08:30:00Z"

    ftp.ensure_dir("/autre/base")
    assert "/autre/base" in fake_ftp.dirs


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("FTP_HOST", " ftp.example ")
    monkeypatch.setenv("FTP_USER", "u")
    monkeypatch.delenv("FTP_PASS", raising=False)
    monkeypatch.setenv("FTP_PASSWORD", "p")
    monkeypatch.setenv("FTP_PORT", "2121")
    monkeypatch.setenv("FTP_SECURE", "true")
    monkeypatch.setenv("FTP_TLS_REJECT_UNAUTH", "0")
    monkeypatch.setenv("KM_FTP_DIR", "/km///")
    monkeypatch.setenv("KM_HORAIRES", "Depart, Retour")

    cfg = FtpConfig.from_env()
    assert (cfg.host, cfg.user, cfg.password, cfg.port) == ("ftp.example", "u", "p", 2121)
    assert cfg.secure and not cfg.verify_tls
    assert cfg.base_dir == "/km"
    assert cfg.horaires == ("depart", "retour")
    cfg.require()


def test_config_bad_port(monkeypatch):
    monkeypatch.setenv("FTP_PORT", "vingt-et-un")
    with pytest.raises(ConfigurationError):
        FtpConfig.from_env()


def test_store_year_skips_undecodable_month(ftp, fake_ftp):
    from km_store import RecordStore

    store = RecordStore(ftp)
    fake_ftp.files["/kilometrage/GLEIZE/2026-01.json"] = b'[{"km": 1}]'
    fake_ftp.files["/kilometrage/GLEIZE/2026-02.json"] = b"\xff\xfe garbage"
    assert store.read_year("Gleize", "2026") == [{"km": 1}]


def test_store_append_over_undecodable_month_starts_empty(ftp, fake_ftp, make_reading):
    from km_store import RecordStore

    fake_ftp.dirs.update({"/kilometrage", "/kilometrage/GLEIZE"})
    fake_ftp.files["/kilometrage/GLEIZE/2026-02.json"] = b"\xff\xfe garbage"
    RecordStore(ftp).append_reading(make_reading())
    rows = ftp.read_json("/kilometrage/GLEIZE/2026-02.json")
    assert [r["km"] for r in rows] == [12345]
