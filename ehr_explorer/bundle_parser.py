"""
Bundle Parser

Turns the raw bytes of a patient bundle file into a normalized RecordSet.
No I/O happens here; callers read the file and hand over the bytes.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from .exceptions import ParseError, ValidationError
from .models import (
    ConditionRecord,
    EncounterRecord,
    MedicationRecord,
    PatientRecord,
    RecordSet,
    RejectedEntry,
    ResourceKind,
    UNKNOWN_CONDITION,
    UNKNOWN_ENCOUNTER_TYPE,
    UNKNOWN_MEDICATION,
    UNKNOWN_PATIENT_NAME,
)

logger = logging.getLogger(__name__)

ParseFunc = Callable[[bytes], RecordSet]

def _get(obj: Any, key: str) -> Any:
    """dict.get that tolerates non-dict values"""
    if isinstance(obj, dict):
        return obj.get(key)
    return None

def _first(items: Any) -> Any:
    if isinstance(items, list) and items:
        return items[0]
    return None

def _text(value: Any) -> Optional[str]:
    """Empty strings count as missing"""
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)

def _first_coding(concept: Any) -> Any:
    return _first(_get(concept, 'coding'))

def reduce_reference(reference: Any) -> str:
    """Reduce 'Patient/abc' or 'urn:uuid:abc' to the trailing id 'abc'."""
    if not isinstance(reference, str) or not reference:
        raise ParseError(f"Invalid reference: {reference!r}", error_code="INVALID_REFERENCE")
    if ':' not in reference and '/' not in reference:
        raise ParseError(f"Reference has no kind separator: {reference!r}", error_code="INVALID_REFERENCE",
                         details={"reference": reference})
    ref_id = reference.split(':')[-1].split('/')[-1]
    if not ref_id:
        raise ParseError(f"Reference has an empty id: {reference!r}", error_code="INVALID_REFERENCE",
                         details={"reference": reference})
    return ref_id

def _subject_id(resource: Dict[str, Any]) -> Optional[str]:
    reference = _get(_get(resource, 'subject'), 'reference')
    if reference is None:
        # Row insert will refuse it; the writer isolates that failure
        return None
    return reduce_reference(reference)

def _extract_patient(resource: Dict[str, Any]) -> PatientRecord:
    name = _first(resource.get('name'))
    if name is not None:
        given = _first(_get(name, 'given')) or ''
        family = _get(name, 'family') or ''
        full_name = f"{given} {family}".strip()
    else:
        full_name = UNKNOWN_PATIENT_NAME

    address = _first(resource.get('address'))
    return PatientRecord(
        id=resource.get('id'),
        name=full_name,
        gender=_text(resource.get('gender')),
        birth_date=_text(resource.get('birthDate')),
        address=json.dumps(address) if address else None,
        phone=_text(_get(_first(resource.get('telecom')), 'value')),
        marital_status=_text(_get(resource.get('maritalStatus'), 'text'))
    )

def _extract_condition(resource: Dict[str, Any]) -> ConditionRecord:
    coding = _first_coding(resource.get('code'))
    return ConditionRecord(
        patient_id=_subject_id(resource),
        condition=_text(_get(coding, 'display')) or UNKNOWN_CONDITION,
        condition_code=_text(_get(coding, 'code')),
        onset_date=_text(resource.get('onsetDateTime')),
        abatement_date=_text(resource.get('abatementDateTime'))
    )

def _extract_medication(resource: Dict[str, Any]) -> MedicationRecord:
    coding = _first_coding(resource.get('medicationCodeableConcept'))
    return MedicationRecord(
        patient_id=_subject_id(resource),
        medication=_text(_get(coding, 'display')) or UNKNOWN_MEDICATION,
        medication_code=_text(_get(coding, 'code')),
        start_date=_text(resource.get('authoredOn')),
        end_date=None,
        status=_text(resource.get('status')),
        dosage=_text(_get(_first(resource.get('dosageInstruction')), 'text'))
    )

def _extract_encounter(resource: Dict[str, Any]) -> EncounterRecord:
    coding = _first_coding(_first(resource.get('type')))
    period = resource.get('period')
    return EncounterRecord(
        patient_id=_subject_id(resource),
        encounter_type=_text(_get(coding, 'display')) or UNKNOWN_ENCOUNTER_TYPE,
        start_date=_text(_get(period, 'start')),
        end_date=_text(_get(period, 'end'))
    )

def _load_document(raw: bytes) -> Any:
    try:
        text = raw.decode('utf-8') if isinstance(raw, (bytes, bytearray)) else raw
    except UnicodeDecodeError as e:
        raise ParseError(f"Bundle is not valid UTF-8: {e}", error_code="INVALID_ENCODING")
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"Bundle is not valid JSON: {e}", error_code="INVALID_JSON")

def _entries(document: Any) -> List[Any]:
    if not isinstance(document, dict):
        raise ParseError("Bundle must be a JSON object", error_code="INVALID_BUNDLE")
    entries = document.get('entry')
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ParseError("Bundle 'entry' must be a list", error_code="INVALID_BUNDLE")
    return entries

def parse_bundle(raw: bytes) -> RecordSet:
    """Parse raw bundle bytes into a RecordSet.

    Raises ParseError when the bytes are not a well-formed bundle. Entries of
    unrecognized kinds are ignored; a child entry with a malformed subject
    reference is rejected on its own and reported in ``RecordSet.rejected``.
    """
    entries = _entries(_load_document(raw))
    record_set = RecordSet()

    for index, entry in enumerate(entries):
        resource = _get(entry, 'resource')
        if not isinstance(resource, dict):
            continue

        resource_type = resource.get('resourceType')
        kind = ResourceKind.from_resource_type(resource_type)
        if kind is None:
            continue

        try:
            if kind is ResourceKind.PATIENT:
                # Last Patient entry wins
                record_set.patient = _extract_patient(resource)
            elif kind is ResourceKind.CONDITION:
                record_set.conditions.append(_extract_condition(resource))
            elif kind is ResourceKind.MEDICATION_REQUEST:
                record_set.medications.append(_extract_medication(resource))
            elif kind is ResourceKind.ENCOUNTER:
                record_set.encounters.append(_extract_encounter(resource))
        except ParseError as e:
            logger.warning(f"Rejected {resource_type} entry #{index}: {e.message}")
            record_set.rejected.append(RejectedEntry(index=index, resource_type=resource_type, reason=e.message))

    logger.debug(
        f"Parsed bundle: patient={record_set.patient.id if record_set.patient else None}, "
        f"conditions={len(record_set.conditions)}, medications={len(record_set.medications)}, "
        f"encounters={len(record_set.encounters)}, rejected={len(record_set.rejected)}"
    )
    return record_set

def validate_upload(raw: bytes) -> Dict[str, Any]:
    """Check that uploaded bytes are a bundle with at least one Patient entry."""
    try:
        document = _load_document(raw)
    except ParseError as e:
        raise ValidationError("Invalid patient data format", error_code="INVALID_BUNDLE",
                              details={"reason": e.message})

    if not isinstance(document, dict) or document.get('resourceType') != 'Bundle':
        raise ValidationError("Invalid patient data format", error_code="INVALID_BUNDLE",
                              details={"reason": "resourceType must be Bundle"})

    entries = document.get('entry')
    if not isinstance(entries, list):
        raise ValidationError("Invalid patient data format", error_code="INVALID_BUNDLE",
                              details={"reason": "entry must be a list"})

    has_patient = any(
        _get(_get(entry, 'resource'), 'resourceType') == ResourceKind.PATIENT.value
        for entry in entries
    )
    if not has_patient:
        raise ValidationError("Invalid patient data format", error_code="INVALID_BUNDLE",
                              details={"reason": "bundle has no Patient entry"})
    return document
