"""
Data Manager for the Man-hour Planner

Defines the planner records and the state tree that owns them, and handles
JSON persistence of that tree with atomic writes and backup recovery.
"""

import json
import logging
from datetime import datetime, date
from typing import Dict, List, Optional, Any, Tuple
from dataclasses import dataclass, field
from pathlib import Path

from .config import PlannerSettings
from .errors import DataFileCorruptedError, PersistenceWriteFailedError

APP_VERSION = "1.0.0"

HOURS_DECIMAL_PLACES = 2
EPSILON = 1e-9

CAPACITY_KINDS = ("vacation", "other_work")

DOCUMENT_SECTIONS = ["settings", "estimates", "allocations", "capacityBlocks", "companyHolidays", "actuals"]


def round_hours(value: float) -> float:
    return round(float(value), HOURS_DECIMAL_PLACES)


def parse_date(value: Any) -> date:
    """Accept a date, datetime or ISO calendar date string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now()
    return datetime.fromisoformat(value)


@dataclass
class Estimate:
    """A task with a total planned effort to be spread over dates"""
    id: str
    title: str
    total_hours: float
    start_date: date
    seq: int
    created_at: datetime = field(default_factory=datetime.now)
    modified_at: datetime = field(default_factory=datetime.now)
    parent_id: Optional[str] = None
    unallocated_hours: float = 0.0
    remaining_hours: Optional[float] = None  # user-entered expected remaining effort
    version: str = ""
    process: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "totalHours": self.total_hours,
            "startDate": self.start_date.isoformat(),
            "seq": self.seq,
            "createdAt": self.created_at.isoformat(),
            "modifiedAt": self.modified_at.isoformat(),
            "parentId": self.parent_id,
            "unallocatedHours": self.unallocated_hours,
            "remainingHours": self.remaining_hours,
            "version": self.version,
            "process": self.process,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Estimate':
        created_at = _parse_timestamp(data.get("createdAt"))
        remaining = data.get("remainingHours")
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            total_hours=float(data.get("totalHours", 0.0)),
            start_date=parse_date(data.get("startDate") or created_at.date()),
            seq=int(data.get("seq", 0)),
            created_at=created_at,
            modified_at=_parse_timestamp(data.get("modifiedAt")),
            parent_id=str(data["parentId"]) if data.get("parentId") is not None else None,
            unallocated_hours=float(data.get("unallocatedHours", 0.0)),
            remaining_hours=float(remaining) if remaining is not None else None,
            version=data.get("version", ""),
            process=data.get("process", ""),
        )


@dataclass
class AllocationEntry:
    """Hours of one estimate placed on one date"""
    estimate_id: str
    date: date
    amount: float
    manual: bool = False
    modified_at: datetime = field(default_factory=datetime.now, compare=False)
    revision: int = field(default=0, compare=False)  # logical clock, higher is more recent

    @property
    def key(self) -> Tuple[str, date]:
        return (self.estimate_id, self.date)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimateId": self.estimate_id,
            "date": self.date.isoformat(),
            "amount": self.amount,
            "manual": self.manual,
            "modifiedAt": self.modified_at.isoformat(),
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AllocationEntry':
        return cls(
            estimate_id=str(data["estimateId"]),
            date=parse_date(data["date"]),
            amount=float(data.get("amount", 0.0)),
            manual=bool(data.get("manual", False)),
            modified_at=_parse_timestamp(data.get("modifiedAt")),
            revision=int(data.get("revision", 0)),
        )


@dataclass
class CapacityBlock:
    """Vacation or other work that reduces a date's capacity"""
    id: str
    date: date
    kind: str  # "vacation" or "other_work"
    amount: float
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "kind": self.kind,
            "amount": self.amount,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CapacityBlock':
        return cls(
            id=str(data["id"]),
            date=parse_date(data["date"]),
            kind=data.get("kind", "vacation"),
            amount=float(data.get("amount", 0.0)),
            note=data.get("note", ""),
        )


@dataclass
class CompanyHoliday:
    """Company-wide closure; every date in the range has no capacity"""
    id: str
    name: str
    start_date: date
    end_date: date

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompanyHoliday':
        start = parse_date(data["startDate"])
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            start_date=start,
            end_date=parse_date(data.get("endDate") or start),
        )


@dataclass
class ActualEntry:
    """Recorded actual effort for an estimate on a date"""
    id: str
    estimate_id: str
    date: date
    amount: float
    note: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "estimateId": self.estimate_id,
            "date": self.date.isoformat(),
            "amount": self.amount,
            "note": self.note,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActualEntry':
        return cls(
            id=str(data["id"]),
            estimate_id=str(data["estimateId"]),
            date=parse_date(data["date"]),
            amount=float(data.get("amount", 0.0)),
            note=data.get("note", ""),
            created_at=_parse_timestamp(data.get("createdAt")),
        )


@dataclass
class PlannerState:
    """The single state tree shared by the calendar, engine, stores and history"""
    settings: PlannerSettings = field(default_factory=PlannerSettings)
    estimates: Dict[str, Estimate] = field(default_factory=dict)
    allocations: Dict[Tuple[str, date], AllocationEntry] = field(default_factory=dict)
    capacity_blocks: Dict[str, CapacityBlock] = field(default_factory=dict)
    company_holidays: Dict[str, CompanyHoliday] = field(default_factory=dict)
    actuals: Dict[str, ActualEntry] = field(default_factory=dict)
    revision: int = 0

    @staticmethod
    def next_id(records: Dict[str, Any]) -> str:
        """Next numeric id for a record collection"""
        existing_ids = [int(record_id) for record_id in records if str(record_id).isdigit()]
        return str(max(existing_ids, default=0) + 1)

    def next_seq(self) -> int:
        return max((e.seq for e in self.estimates.values()), default=0) + 1

    def next_revision(self) -> int:
        self.revision += 1
        return self.revision

    def ordered_estimates(self) -> List[Estimate]:
        """Estimates in allocation priority order (earliest created first)"""
        return sorted(self.estimates.values(), key=lambda e: (e.seq, e.id))

    def entries_for(self, estimate_id: str) -> List[AllocationEntry]:
        entries = [e for e in self.allocations.values() if e.estimate_id == estimate_id]
        return sorted(entries, key=lambda e: e.date)

    def entries_on(self, day: date) -> List[AllocationEntry]:
        return [e for e in self.allocations.values() if e.date == day]

    def to_dict(self) -> Dict[str, Any]:
        settings = self.settings.to_dict()
        settings["appVersion"] = APP_VERSION
        settings["revision"] = self.revision
        return {
            "settings": settings,
            "estimates": [e.to_dict() for e in self.ordered_estimates()],
            "allocations": [a.to_dict() for a in sorted(self.allocations.values(),
                                                        key=lambda a: (a.estimate_id, a.date))],
            "capacityBlocks": [b.to_dict() for b in self.capacity_blocks.values()],
            "companyHolidays": [h.to_dict() for h in self.company_holidays.values()],
            "actuals": [a.to_dict() for a in self.actuals.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlannerState':
        settings_data = data.get("settings", {})
        state = cls(settings=PlannerSettings.from_dict(settings_data),
                    revision=int(settings_data.get("revision", 0)))
        for record in data.get("estimates", []):
            estimate = Estimate.from_dict(record)
            state.estimates[estimate.id] = estimate
        for record in data.get("allocations", []):
            entry = AllocationEntry.from_dict(record)
            state.allocations[entry.key] = entry
        for record in data.get("capacityBlocks", []):
            block = CapacityBlock.from_dict(record)
            state.capacity_blocks[block.id] = block
        for record in data.get("companyHolidays", []):
            holiday = CompanyHoliday.from_dict(record)
            state.company_holidays[holiday.id] = holiday
        for record in data.get("actuals", []):
            actual = ActualEntry.from_dict(record)
            state.actuals[actual.id] = actual
        return state


class DataManager:
    """Loads and saves the planner document"""

    def __init__(self, data_file: str = "data/manhour_data.json"):
        # Relative paths resolve against the working directory
        self.data_file = Path(data_file).expanduser().resolve()
        self.data = self._load_or_create_data()

    def _read_file(self, path: Path) -> Dict[str, Any]:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise json.JSONDecodeError("Top level of planner document must be an object", str(path), 0)
        return data

    def _load_or_create_data(self) -> Dict[str, Any]:
        """Load existing data or create default structure with recovery from backup"""
        backup_file = self.data_file.with_suffix('.bak')
        if self.data_file.exists():
            try:
                return self._validate_and_migrate_data(self._read_file(self.data_file))
            except (json.JSONDecodeError, IOError) as e:
                logging.error(f"Error loading main data file {self.data_file}: {e}")
                if not backup_file.exists():
                    raise DataFileCorruptedError(f"Main data file corrupted and no backup available: {e}")
                try:
                    logging.info(f"Attempting recovery from backup file {backup_file}")
                    data = self._read_file(backup_file)
                    backup_file.replace(self.data_file)
                    logging.info("Successfully recovered data from backup")
                    return self._validate_and_migrate_data(data)
                except (json.JSONDecodeError, IOError) as backup_e:
                    logging.error(f"Backup file also corrupted: {backup_e}")
                    logging.info("Creating default data due to corrupted files")
                    return self._create_default_data()

        if backup_file.exists():
            try:
                logging.info(f"Main data file missing, attempting recovery from backup {backup_file}")
                data = self._read_file(backup_file)
                backup_file.replace(self.data_file)
                logging.info("Successfully recovered data from backup")
                return self._validate_and_migrate_data(data)
            except (json.JSONDecodeError, IOError) as backup_e:
                logging.error(f"Backup file corrupted: {backup_e}")
                logging.info("Creating default data due to corrupted backup")
                return self._create_default_data()

        logging.info("No data file found, creating default data")
        return self._create_default_data()

    def _validate_and_migrate_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and migrate data structure to current version"""
        default_data = self._create_default_data()

        # Older documents kept personal vacations as {date, hours} records
        if "vacations" in data and "capacityBlocks" not in data:
            blocks = []
            for index, vacation in enumerate(data.pop("vacations") or [], start=1):
                blocks.append({
                    "id": str(vacation.get("id", index)),
                    "date": vacation["date"],
                    "kind": "vacation",
                    "amount": vacation.get("hours", 8),
                    "note": vacation.get("vacationType", ""),
                })
            data["capacityBlocks"] = blocks

        # Merge with defaults to ensure all keys exist
        for key in default_data:
            if key not in data:
                data[key] = default_data[key]

        return data

    def _create_default_data(self) -> Dict[str, Any]:
        """Create default (empty) document"""
        settings = PlannerSettings().to_dict()
        settings["appVersion"] = APP_VERSION
        settings["revision"] = 0
        return {
            "settings": settings,
            "estimates": [],
            "allocations": [],
            "capacityBlocks": [],
            "companyHolidays": [],
            "actuals": [],
        }

    def load_state(self) -> PlannerState:
        """Build the state tree from the loaded document"""
        return PlannerState.from_dict(self.data)

    def _validate_saved_data(self) -> bool:
        """Validate that the saved data file matches current data"""
        try:
            saved_data = self._read_file(self.data_file)
        except (json.JSONDecodeError, IOError) as e:
            raise PersistenceWriteFailedError(f"Failed to validate saved data: {e}")

        for key in DOCUMENT_SECTIONS:
            if key not in saved_data:
                raise PersistenceWriteFailedError(f"Required section '{key}' missing from saved data")

        if saved_data["settings"].get("appVersion") != APP_VERSION:
            raise PersistenceWriteFailedError("App version mismatch in saved data")

        return True

    def save_state(self, state: PlannerState) -> bool:
        """Save the state tree to file atomically with validation"""
        temp_file = None
        backup_file = self.data_file.with_suffix('.bak')
        document = state.to_dict()

        try:
            self.data_file.parent.mkdir(parents=True, exist_ok=True)

            # Create backup of existing file if it exists
            if self.data_file.exists():
                self.data_file.replace(backup_file)

            # Write to temporary file first
            temp_file = self.data_file.with_suffix('.tmp')
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2, ensure_ascii=False)

            temp_file.replace(self.data_file)
            self._validate_saved_data()
            self.data = document
            return True

        except PersistenceWriteFailedError as e:
            logging.error(f"Data validation failed after save: {e}", exc_info=True)
            if backup_file.exists():
                try:
                    backup_file.replace(self.data_file)
                except OSError as restore_e:
                    logging.error(f"Failed to restore from backup: {restore_e}", exc_info=True)
            raise

        except (IOError, OSError, TypeError, ValueError) as e:
            logging.error(f"Error during save operation: {e}", exc_info=True)
            raise PersistenceWriteFailedError(f"Failed to save data: {e}") from e

        finally:
            # Clean up temp file if it still exists
            if temp_file and temp_file.exists():
                try:
                    temp_file.unlink()
                except OSError as cleanup_e:
                    logging.error(f"Failed to clean up temporary file {temp_file}: {cleanup_e}", exc_info=True)
