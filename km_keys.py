# km_keys.py - codes agence, cles de partition et chemins FTP
#
# Structure distante :
#   {base}/params.json                 registre des tournees
#   {base}/{CODEAGENCE}/{YYYY-MM}.json releves du mois pour une agence
import posixpath
import re
import unicodedata
from datetime import datetime, timezone, date as _date
from typing import Optional

UNKNOWN_SITE = "UNKNOWN"
REGISTRY_KEY = "global"
REGISTRY_FILE = "params.json"

_WS_RE = re.compile(r"\s+")
_UNSAFE_RE = re.compile(r"[^A-Z0-9_\-]")
_YEAR_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
_YEAR_RE = re.compile(r"^\d{4}$")
PERIOD_FILE_RE = re.compile(r"^(\d{4}-(?:0[1-9]|1[0-2]))\.json$")


def normalize_site_code(label: Optional[str]) -> str:
    """
    Code agence sur pour un nom de dossier FTP.
    "Chassé sur Rhône" -> "CHASSE_SUR_RHONE"
    """
    s = unicodedata.normalize("NFKD", str(label or "").strip())
    s = "".join(c for c in s if not unicodedata.combining(c))
    s = _WS_RE.sub("_", s.upper())
    s = _UNSAFE_RE.sub("", s)
    return s or UNKNOWN_SITE


def monthly_path(base_dir: str, site: str, year_month: str) -> str:
    return posixpath.join(base_dir, normalize_site_code(site), f"{year_month}.json")


def site_dir(base_dir: str, site: str) -> str:
    return posixpath.join(base_dir, normalize_site_code(site))


def registry_path(base_dir: str) -> str:
    return posixpath.join(base_dir, REGISTRY_FILE)


def partition_key(site: str, year_month: str) -> str:
    return f"{normalize_site_code(site)}/{year_month}"


def year_month_of(day) -> str:
    """YYYY-MM depuis une date YYYY-MM-DD (mois courant si illisible)."""
    if isinstance(day, (datetime, _date)):
        return day.strftime("%Y-%m")
    s = str(day or "").strip()
    if len(s) >= 7:
        return s[:7]
    return datetime.now(timezone.utc).strftime("%Y-%m")


def parse_day(value) -> Optional[str]:
    """Normalise en YYYY-MM-DD, None si la date est invalide."""
    if isinstance(value, (datetime, _date)):
        return value.strftime("%Y-%m-%d")
    s = str(value or "").strip()[:10]
    try:
        return datetime.strptime(s, "%Y-%m-%d").strftime("%Y-%m-%d")
    except ValueError:
        return None


def is_year_month(value: str) -> bool:
    return bool(_YEAR_MONTH_RE.match(str(value or "")))


def is_year(value: str) -> bool:
    return bool(_YEAR_RE.match(str(value or "")))
