# config.py - configuration FTP / kilometrage lue depuis l'environnement
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from km_errors import ConfigurationError

DEFAULT_BASE_DIR = "/kilometrage"
DEFAULT_HORAIRES = "8h,12h,14h,18h"


def _env(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or "").strip()


def _bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _csv(s: str) -> Tuple[str, ...]:
    return tuple(x.strip().lower() for x in (s or "").split(",") if x.strip())


@dataclass(frozen=True)
class FtpConfig:
    host: str = ""
    user: str = ""
    password: str = ""
    port: int = 21
    secure: bool = False
    reject_unauthorized: bool = True
    insecure: bool = False
    base_dir: str = DEFAULT_BASE_DIR
    timeout: float = 30.0
    horaires: Tuple[str, ...] = _csv(DEFAULT_HORAIRES)

    @classmethod
    def from_env(cls) -> "FtpConfig":
        base = _env("KM_FTP_DIR") or _env("FTP_BASE_DIR") or DEFAULT_BASE_DIR
        base = base.rstrip("/") or "/"
        try:
            port = int(_env("FTP_PORT") or 21)
            timeout = float(_env("FTP_TIMEOUT") or 30)
        except ValueError as e:
            raise ConfigurationError(f"FTP_PORT / FTP_TIMEOUT invalide: {e}") from e
        return cls(
            host=_env("FTP_HOST"),
            user=_env("FTP_USER"),
            password=_env("FTP_PASS") or _env("FTP_PASSWORD"),
            port=port,
            secure=_bool("FTP_SECURE"),
            # FTP_TLS_REJECT_UNAUTH=0 pour le dev
            reject_unauthorized=_env("FTP_TLS_REJECT_UNAUTH") != "0",
            insecure=_env("FTP_TLS_INSECURE") == "1",
            base_dir=base,
            timeout=timeout,
            horaires=_csv(_env("KM_HORAIRES", DEFAULT_HORAIRES)),
        )

    @property
    def verify_tls(self) -> bool:
        return self.reject_unauthorized and not self.insecure

    def require(self) -> None:
        """Leve ConfigurationError si la connexion FTP est impossible a ouvrir."""
        missing = [n for n, v in (("FTP_HOST", self.host), ("FTP_USER", self.user), ("FTP_PASS", self.password)) if not v]
        if missing:
            raise ConfigurationError(f"{', '.join(missing)} manquant(s) pour le kilometrage")


class Config:
    # Origines front autorisees (en plus de localhost)
    FRONTEND_ORIGINS = [o.strip() for o in _env("FRONTEND_ORIGINS").replace(",", " ").split() if o.strip()]
    ADMIN_API_KEY = _env("ADMIN_API_KEY")
    RATELIMIT_DEFAULT = _env("RATE_LIMITS", "200/minute; 2000/hour")
    RATELIMIT_STORAGE_URI = _env("LIMITER_STORAGE_URI", "memory://")
    KM_LOG_FILE: Optional[str] = _env("KM_LOG_FILE", "backend.log") or None
    KM_LOG_LEVEL = _env("KM_LOG_LEVEL", "INFO").upper()
    JSON_AS_ASCII = False
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024
