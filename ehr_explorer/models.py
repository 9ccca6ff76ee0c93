"""
Normalized record types produced by the bundle parser and written by the
transactional writer.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Any

UNKNOWN_PATIENT_NAME = "Unknown"
UNKNOWN_CONDITION = "Unknown Condition"
UNKNOWN_MEDICATION = "Unknown Medication"
UNKNOWN_ENCOUNTER_TYPE = "Unknown"

class ResourceKind(str, Enum):
    """Bundle entry kinds the parser extracts"""
    PATIENT = "Patient"
    CONDITION = "Condition"
    MEDICATION_REQUEST = "MedicationRequest"
    ENCOUNTER = "Encounter"

    @classmethod
    def from_resource_type(cls, resource_type: Any) -> Optional['ResourceKind']:
        try:
            return cls(resource_type)
        except ValueError:
            return None

@dataclass
class PatientRecord:
    id: str
    name: str = UNKNOWN_PATIENT_NAME
    gender: Optional[str] = None
    birth_date: Optional[str] = None
    address: Optional[str] = None  # serialized JSON, not interpreted here
    phone: Optional[str] = None
    marital_status: Optional[str] = None

@dataclass
class ConditionRecord:
    patient_id: Optional[str]
    condition: str = UNKNOWN_CONDITION
    condition_code: Optional[str] = None
    onset_date: Optional[str] = None
    abatement_date: Optional[str] = None  # None means ongoing
    id: Optional[int] = None

@dataclass
class MedicationRecord:
    patient_id: Optional[str]
    medication: str = UNKNOWN_MEDICATION
    medication_code: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None  # never populated at ingestion
    status: Optional[str] = None
    dosage: Optional[str] = None
    id: Optional[int] = None

@dataclass
class EncounterRecord:
    patient_id: Optional[str]
    encounter_type: str = UNKNOWN_ENCOUNTER_TYPE
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    id: Optional[int] = None

@dataclass
class RejectedEntry:
    """A bundle entry the parser refused, kept so the caller can report it"""
    index: int
    resource_type: str
    reason: str

@dataclass
class RecordSet:
    """Everything extracted from one bundle"""
    patient: Optional[PatientRecord] = None
    conditions: List[ConditionRecord] = field(default_factory=list)
    medications: List[MedicationRecord] = field(default_factory=list)
    encounters: List[EncounterRecord] = field(default_factory=list)
    rejected: List[RejectedEntry] = field(default_factory=list)

    @property
    def child_count(self) -> int:
        return len(self.conditions) + len(self.medications) + len(self.encounters)

    def is_empty(self) -> bool:
        return self.patient is None and self.child_count == 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
