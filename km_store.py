# km_store.py - releves kilometriques et registre des tournees sur FTP
#
# Chaque ecriture est un read-modify-write complet du fichier, serialise
# par la WriteQueue sur la cle du fichier ("GLEIZE/2026-02" ou "global").
# Les lectures ne prennent pas de verrou: le FTP remplace le fichier entier,
# on voit donc l'etat avant ou apres une ecriture, jamais un melange.
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import km_keys
from ftp_transport import FtpTransport
from km_errors import TransportError, ValidationError
from write_queue import WriteQueue

log = logging.getLogger("kilometrage")

Row = Dict[str, Any]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _s(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class MileageRecord:
    type: str                   # 'releve' | 'absence'
    id: Optional[str]           # identifiant QR code de la tournee
    agence: str
    code_agence: str
    tournee: str
    code_tournee: str
    chauffeur: str
    code_chauffeur: str
    date: str                   # YYYY-MM-DD
    km: Optional[float]         # None pour une absence
    horaire: Optional[str]      # None pour une absence
    commentaire: str
    note: str
    created_at: str

    @property
    def site_code(self) -> str:
        return km_keys.normalize_site_code(self.code_agence or self.agence)

    @property
    def year_month(self) -> str:
        return km_keys.year_month_of(self.date)

    def to_dict(self) -> Row:
        return {
            "type": self.type,
            "id": self.id,
            "agence": self.agence,
            "codeAgence": self.code_agence,
            "tournee": self.tournee,
            "codeTournee": self.code_tournee,
            "chauffeur": self.chauffeur,
            "codeChauffeur": self.code_chauffeur,
            "date": self.date,
            "km": self.km,
            "horaire": self.horaire,
            "commentaire": self.commentaire,
            "note": self.note,
            "createdAt": self.created_at,
        }


# ===== Validation =====

def _require_day(payload: Dict[str, Any]) -> str:
    if not _s(payload.get("date")).strip():
        raise ValidationError("Champ obligatoire manquant (date)", "missing_date")
    day = km_keys.parse_day(payload.get("date"))
    if day is None:
        raise ValidationError("Date invalide (YYYY-MM-DD attendu)", "bad_date")
    return day


def _parse_km(value: Any):
    if value is None or isinstance(value, bool) or _s(value).strip() == "":
        raise ValidationError("Valeur km invalide", "bad_km")
    try:
        km = float(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("Valeur km invalide", "bad_km")
    if math.isnan(km) or math.isinf(km) or km < 0:
        raise ValidationError("Valeur km invalide", "bad_km")
    return int(km) if km.is_integer() else km


def _route_id(value: Any) -> Optional[str]:
    s = _s(value).strip()
    return s or None


def build_reading(payload: Dict[str, Any], horaires: Sequence[str] = (), now: Optional[str] = None) -> MileageRecord:
    agence = _s(payload.get("agence")).strip()
    if not agence:
        raise ValidationError("Champs obligatoires manquants (agence, date)", "missing_site")
    day = _require_day(payload)
    km = _parse_km(payload.get("km"))

    horaire = _s(payload.get("horaire")).strip().lower()
    if horaire and horaires and horaire not in horaires:
        raise ValidationError(f"Horaire invalide ({', '.join(horaires)})", "bad_horaire")

    return MileageRecord(
        type="releve",
        id=_route_id(payload.get("id")),
        agence=agence,
        code_agence=_s(payload.get("codeAgence")).strip() or agence,
        tournee=_s(payload.get("tournee")),
        code_tournee=_s(payload.get("codeTournee")),
        chauffeur=_s(payload.get("chauffeur")),
        code_chauffeur=_s(payload.get("codeChauffeur")),
        date=day,
        km=km,
        horaire=horaire,
        commentaire=_s(payload.get("commentaire")),
        note="",
        created_at=now or utc_now_iso(),
    )


def build_absence(payload: Dict[str, Any], now: Optional[str] = None) -> MileageRecord:
    agence = _s(payload.get("agence")).strip()
    code_tournee = _s(payload.get("codeTournee")).strip()
    if not agence or not code_tournee or not _s(payload.get("date")).strip():
        raise ValidationError("Champs obligatoires manquants (agence, codeTournee, date)", "missing_fields")
    day = _require_day(payload)

    return MileageRecord(
        type="absence",
        id=None,
        agence=agence,
        code_agence=_s(payload.get("codeAgence")).strip() or agence,
        tournee=_s(payload.get("tournee")),
        code_tournee=code_tournee,
        chauffeur=_s(payload.get("chauffeur")),
        code_chauffeur=_s(payload.get("codeChauffeur")),
        date=day,
        km=None,
        horaire=None,
        commentaire="",
        note=_s(payload.get("note")),
        created_at=now or utc_now_iso(),
    )


# ===== Transformations du registre (fonctions pures) =====

def _same_site(row: Row, site: str) -> bool:
    ag = site.lower()
    return _s(row.get("agence")).lower() == ag or _s(row.get("codeAgence")).lower() == ag


def next_route_id(params: List[Row], agence: str, code_tournee: str, now: str) -> Tuple[List[Row], str]:
    """
    Nouvel identifiant QR pour une tournee (changement de chauffeur).
    Les lignes actives de l'agence sont tamponnees, une nouvelle ligne est ajoutee.
    """
    code = _s(code_tournee).strip()
    same_code = [p for p in params if _s(p.get("codeTournee")).strip() == code]

    max_seq = 0
    for p in same_code:
        tail = _s(p.get("id")).split("-")[-1]
        if tail.isdigit():
            max_seq = max(max_seq, int(tail))
    new_id = f"{code}-{max_seq + 1:03d}"

    ref = next((p for p in same_code if _same_site(p, agence)), same_code[0] if same_code else {})

    updated = [
        {**p, "dernierRemplacement": now}
        if _s(p.get("codeTournee")).strip() == code and _same_site(p, agence)
        else p
        for p in params
    ]
    updated.append({
        "agence": ref.get("agence") or agence,
        "codeAgence": ref.get("codeAgence") or agence,
        "tournee": ref.get("tournee") or "",
        "codeTournee": code,
        "transporteur": "",
        "codeTransporteur": "",
        "id": new_id,
        "dernierRemplacement": None,
    })
    return updated, new_id


def assign_driver(params: List[Row], route_id: str, transporteur: str, code_transporteur: str) -> List[Row]:
    rid = _s(route_id).strip()
    if not any(_s(p.get("id")).strip() == rid for p in params):
        raise ValidationError(f"Identifiant inconnu: {rid}", "unknown_id")
    return [
        {**p, "transporteur": _s(transporteur), "codeTransporteur": _s(code_transporteur)}
        if _s(p.get("id")).strip() == rid
        else p
        for p in params
    ]


# ===== Store =====

class RecordStore:
    def __init__(self, transport: FtpTransport, queue: Optional[WriteQueue] = None, horaires: Sequence[str] = ()):
        self.transport = transport
        self.queue = queue if queue is not None else WriteQueue()
        self.horaires = tuple(horaires)

    @property
    def base_dir(self) -> str:
        return self.transport.config.base_dir

    def _read_list(self, remote: str) -> List[Row]:
        data = self.transport.read_json(remote)
        return data if isinstance(data, list) else []

    # ----- releves -----
    def append_record(self, record: MileageRecord) -> MileageRecord:
        site = record.site_code
        ym = record.year_month
        remote = km_keys.monthly_path(self.base_dir, site, ym)

        def _rmw():
            records = self._read_list(remote)
            records.append(record.to_dict())
            self.transport.write_json(remote, records)

        self.queue.with_lock(km_keys.partition_key(site, ym), _rmw)
        return record

    def append_reading(self, payload: Dict[str, Any]) -> MileageRecord:
        record = self.append_record(build_reading(payload, self.horaires))
        log.info("[KM] save: %s/%s %s -> %s km", record.code_agence, record.code_tournee, record.date, record.km)
        return record

    def append_absence(self, payload: Dict[str, Any]) -> MileageRecord:
        record = self.append_record(build_absence(payload))
        log.info("[KM] absent: %s/%s le %s", record.code_agence, record.code_tournee, record.date)
        return record

    def read_month(self, site: str, year_month: str) -> List[Row]:
        return self._read_list(km_keys.monthly_path(self.base_dir, site, year_month))

    def read_year(self, site: str, year) -> List[Row]:
        # sequentiel: une seule connexion FTP a la fois
        rows: List[Row] = []
        for month in range(1, 13):
            ym = f"{year}-{month:02d}"
            try:
                rows.extend(self.read_month(site, ym))
            except TransportError as e:
                log.error("[KM] Lecture mois KO %s %s: %s", site, ym, e)
        return rows

    def read_day(self, site: str, day: str, route_id: Optional[str] = None,
                 route_code: Optional[str] = None, driver_code: Optional[str] = None) -> List[Row]:
        day = _s(day).strip()[:10]
        rows = [r for r in self.read_month(site, km_keys.year_month_of(day)) if _s(r.get("date"))[:10] == day]
        for field, wanted in (("id", route_id), ("codeTournee", route_code), ("codeChauffeur", driver_code)):
            if wanted:
                rows = [r for r in rows if _s(r.get(field)).strip() == wanted.strip()]
        return rows

    # ----- registre -----
    def read_registry(self, site: Optional[str] = None) -> List[Row]:
        rows = self._read_list(km_keys.registry_path(self.base_dir))
        if site:
            rows = [r for r in rows if _same_site(r, site.strip())]
        return rows

    def update_registry(self, transform: Callable[[List[Row]], List[Row]]) -> List[Row]:
        remote = km_keys.registry_path(self.base_dir)

        def _rmw():
            updated = transform(self._read_list(remote))
            self.transport.write_json(remote, updated)
            return updated

        return self.queue.with_lock(km_keys.REGISTRY_KEY, _rmw)

    def new_route_id(self, agence: str, code_tournee: str) -> str:
        if not _s(agence).strip() or not _s(code_tournee).strip():
            raise ValidationError("Champs manquants (agence / codeTournee)", "missing_fields")
        result = {}

        def _transform(params):
            updated, result["id"] = next_route_id(params, agence, code_tournee, utc_now_iso())
            return updated

        self.update_registry(_transform)
        log.info("[KM] newid: %s (tournee %s, agence %s)", result["id"], code_tournee, agence)
        return result["id"]

    def assign_driver(self, route_id: str, transporteur: str, code_transporteur: str) -> Row:
        if not _s(route_id).strip():
            raise ValidationError("Champ manquant (id)", "missing_id")
        updated = self.update_registry(lambda params: assign_driver(params, route_id, transporteur, code_transporteur))
        row = next((p for p in updated if _s(p.get("id")).strip() == _s(route_id).strip()), None)
        if row is None:
            raise ValidationError(f"Identifiant inconnu: {_s(route_id).strip()}", "unknown_id")
        log.info("[KM] assign: %s -> %s", row.get("id"), row.get("codeTransporteur"))
        return row

    def replace_registry(self, rows: Any) -> List[Row]:
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise ValidationError("Le registre doit etre une liste d'objets", "bad_registry")
        return self.update_registry(lambda _params: list(rows))

    def registry_modified_at(self) -> Optional[str]:
        return self.transport.modified_at(km_keys.registry_path(self.base_dir))

    # ----- inventaire -----
    def list_sites(self) -> List[str]:
        return self.transport.list_dirs(self.base_dir)

    def list_periods(self, site: str) -> List[str]:
        names = self.transport.list_files(km_keys.site_dir(self.base_dir, site))
        return sorted(m.group(1) for m in map(km_keys.PERIOD_FILE_RE.match, names) if m)

    def healthcheck(self) -> Dict[str, Any]:
        self.transport.ensure_dir(self.base_dir)
        return {"dir": self.base_dir, "pendingWrites": self.queue.pending()}

    def pending_writes(self) -> int:
        return self.queue.pending()
