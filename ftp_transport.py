# ftp_transport.py - lecture / ecriture de fichiers JSON entiers sur le FTP
#
# Une connexion par operation (ouverte, utilisee, fermee).
# Tout passe par un fichier temporaire local, supprime dans tous les cas.
import contextlib
import ftplib
import json
import logging
import os
import posixpath
import ssl
import tempfile
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

from config import FtpConfig
from km_errors import TransportError

log = logging.getLogger("kilometrage")


def _is_not_found(err: Exception) -> bool:
    # 550 : fichier / dossier absent cote FTP
    return isinstance(err, ftplib.error_perm) and str(err).startswith("550")


@contextlib.contextmanager
def _scratch(prefix: str) -> Iterator[str]:
    fd, path = tempfile.mkstemp(prefix=f"km_{prefix}_", suffix=".json")
    os.close(fd)
    try:
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(path)


class FtpTransport:
    def __init__(self, config: FtpConfig):
        self.config = config

    # ----- connexion -----
    def _connect(self) -> ftplib.FTP:
        cfg = self.config
        cfg.require()
        if cfg.secure:
            ctx = ssl.create_default_context()
            if not cfg.verify_tls:
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
            client = ftplib.FTP_TLS(context=ctx, timeout=cfg.timeout)
        else:
            client = ftplib.FTP(timeout=cfg.timeout)
        try:
            client.connect(cfg.host, cfg.port)
            client.login(cfg.user, cfg.password)
            if cfg.secure:
                client.prot_p()
        except BaseException:
            client.close()
            raise
        return client

    @contextlib.contextmanager
    def _session(self, what: str, path: str) -> Iterator[ftplib.FTP]:
        try:
            client = self._connect()
        except ftplib.all_errors as e:
            log.error("[KM] connexion FTP KO (%s %s): %s", what, path, e)
            raise TransportError(f"Connexion FTP impossible: {e}") from e
        try:
            yield client
        except ftplib.all_errors as e:
            log.error("[KM] FTP %s KO %s: %s", what, path, e)
            raise TransportError(f"FTP {what} {path}: {e}") from e
        finally:
            try:
                client.quit()
            except ftplib.all_errors:
                client.close()

    # ----- JSON -----
    def read_json(self, remote_path: str) -> Optional[Any]:
        """Retourne le JSON du fichier, ou None s'il est absent, vide ou illisible."""
        with _scratch("read") as tmp:
            with self._session("read", remote_path) as client:
                try:
                    with open(tmp, "wb") as fh:
                        client.retrbinary(f"RETR {remote_path}", fh.write)
                except ftplib.error_perm as e:
                    if _is_not_found(e):
                        return None
                    raise

            with open(tmp, "rb") as fh:
                payload = fh.read()

        try:
            raw = payload.decode("utf-8-sig").strip()
            # fichier vide / partiel => considere absent
            if not raw:
                return None
            return json.loads(raw)
        except ValueError as e:
            log.error("[KM] JSON invalide sur FTP : %s -> %s", remote_path, e)
            return None

    def write_json(self, remote_path: str, data: Any) -> None:
        with _scratch("write") as tmp:
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
            with self._session("write", remote_path) as client:
                self._mkdirs(client, posixpath.dirname(remote_path))
                with open(tmp, "rb") as fh:
                    client.storbinary(f"STOR {remote_path}", fh)

    # ----- dossiers -----
    @staticmethod
    def _mkdirs(client: ftplib.FTP, remote_dir: str) -> None:
        if not remote_dir or remote_dir == "/":
            return
        current = "/" if remote_dir.startswith("/") else ""
        for part in [p for p in remote_dir.split("/") if p]:
            current = posixpath.join(current, part)
            try:
                client.mkd(current)
            except ftplib.error_perm:
                # deja present (ou refuse: l'upload echouera de toute facon)
                pass

    def ensure_dir(self, remote_dir: str) -> None:
        with self._session("mkdir", remote_dir) as client:
            self._mkdirs(client, remote_dir)
            client.cwd(remote_dir)

    def list_dirs(self, remote_dir: str) -> List[str]:
        with self._session("list", remote_dir) as client:
            try:
                return sorted(
                    name for name, facts in client.mlsd(remote_dir, facts=["type"])
                    if facts.get("type") == "dir"
                )
            except ftplib.error_perm as e:
                if _is_not_found(e):
                    return []
                # MLSD non supporte (500/502): on devine avec NLST
                log.info("[KM] MLSD indisponible (%s), repli NLST", e)
            names = self._nlst(client, remote_dir)
        return sorted(n for n in names if "." not in n)

    def list_files(self, remote_dir: str) -> List[str]:
        with self._session("list", remote_dir) as client:
            return sorted(self._nlst(client, remote_dir))

    @staticmethod
    def _nlst(client: ftplib.FTP, remote_dir: str) -> List[str]:
        try:
            names = client.nlst(remote_dir)
        except ftplib.error_perm as e:
            # certains serveurs repondent 550 sur un dossier vide
            if _is_not_found(e):
                return []
            raise
        return [posixpath.basename(n.rstrip("/")) for n in names if n not in (".", "..")]

    def modified_at(self, remote_path: str) -> Optional[str]:
        """Date de modification (MDTM) en ISO UTC, None si absent / non supporte."""
        with self._session("mdtm", remote_path) as client:
            try:
                resp = client.voidcmd(f"MDTM {remote_path}")
            except ftplib.error_perm:
                return None
        stamp = resp.split()[-1][:14]
        try:
            dt = datetime.strptime(stamp, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
        except ValueError:
            return None
        return dt.isoformat().replace("+00:00", "Z")
