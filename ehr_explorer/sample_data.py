"""
Builders for small patient bundles.

Used to seed a data directory with demo patients and by the test suite.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

def patient_resource(patient_id: str = "p1", given: str = "Jane", family: str = "Doe", **extra) -> Dict[str, Any]:
    resource = {
        "resourceType": "Patient",
        "id": patient_id,
        "name": [{"given": [given], "family": family}],
        "gender": "female",
        "birthDate": "1990-04-12",
    }
    resource.update(extra)
    return resource

def condition_resource(reference: str = "urn:uuid:p1", display: Optional[str] = "Asthma",
                       onset: str = "2020-01-01", code: str = "195967001",
                       abatement: Optional[str] = None) -> Dict[str, Any]:
    coding = {"code": code}
    if display is not None:
        coding["display"] = display
    resource = {
        "resourceType": "Condition",
        "subject": {"reference": reference},
        "code": {"coding": [coding]},
        "onsetDateTime": onset,
    }
    if abatement:
        resource["abatementDateTime"] = abatement
    return resource

def medication_resource(reference: str = "urn:uuid:p1", display: Optional[str] = "Albuterol",
                        status: str = "active", authored_on: str = "2020-01-02",
                        code: str = "745679", dosage: str = "2 puffs as needed") -> Dict[str, Any]:
    coding = {"code": code}
    if display is not None:
        coding["display"] = display
    return {
        "resourceType": "MedicationRequest",
        "subject": {"reference": reference},
        "medicationCodeableConcept": {"coding": [coding]},
        "status": status,
        "authoredOn": authored_on,
        "dosageInstruction": [{"text": dosage}],
    }

def encounter_resource(reference: str = "Patient/p1", display: str = "General examination",
                       start: str = "2020-01-01T09:00:00Z", end: str = "2020-01-01T09:30:00Z") -> Dict[str, Any]:
    return {
        "resourceType": "Encounter",
        "subject": {"reference": reference},
        "type": [{"coding": [{"display": display}]}],
        "period": {"start": start, "end": end},
    }

def make_bundle(resources: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "resourceType": "Bundle",
        "type": "transaction",
        "entry": [{"fullUrl": f"urn:uuid:entry-{i}", "resource": r} for i, r in enumerate(resources)],
    }

def sample_bundles() -> Dict[str, Dict[str, Any]]:
    """Two demo patients keyed by file name"""
    ref1 = "urn:uuid:sample-patient-1"
    ref2 = "urn:uuid:sample-patient-2"
    return {
        "sample-patient-1.json": make_bundle([
            patient_resource(
                "sample-patient-1", "John", "Smith",
                gender="male",
                birthDate="1980-05-15",
                address=[{"line": ["123 Main St"], "city": "Boston", "state": "Massachusetts", "postalCode": "02108"}],
                telecom=[{"system": "phone", "value": "555-123-4567"}],
                maritalStatus={"text": "Married"},
            ),
            condition_resource(ref1, "Hypertension", "2015-03-12", "59621000"),
            condition_resource(ref1, "Type 2 Diabetes", "2018-07-22", "44054006"),
            medication_resource(ref1, "Lisinopril 10mg", "active", "2015-03-15", "314076",
                                "Take 1 tablet by mouth once daily"),
            medication_resource(ref1, "Metformin 500mg", "active", "2018-07-25", "105078",
                                "Take 1 tablet by mouth twice daily with meals"),
            encounter_resource(ref1, "Outpatient Visit", "2022-03-15", "2022-03-15"),
            encounter_resource(ref1, "Annual Physical", "2023-05-10", "2023-05-10"),
        ]),
        "sample-patient-2.json": make_bundle([
            patient_resource(
                "sample-patient-2", "Jane", "Doe",
                birthDate="1992-10-08",
                address=[{"line": ["456 Oak Ave"], "city": "Boston", "state": "Massachusetts", "postalCode": "02109"}],
                telecom=[{"system": "phone", "value": "555-987-6543"}],
                maritalStatus={"text": "Single"},
            ),
            condition_resource(ref2, "Asthma", "2010-01-15", "195967001"),
            medication_resource(ref2, "Albuterol Inhaler", "active", "2010-01-20", "895994",
                                "Inhale 2 puffs every 4-6 hours as needed for shortness of breath"),
            encounter_resource(ref2, "Emergency Room Visit", "2022-11-23", "2022-11-23"),
        ]),
    }

def write_sample_bundles(data_dir: Union[str, Path]) -> List[Path]:
    directory = Path(data_dir)
    directory.mkdir(parents=True, exist_ok=True)
    written = []
    for file_name, bundle in sample_bundles().items():
        path = directory / file_name
        path.write_text(json.dumps(bundle, indent=2), encoding="utf-8")
        written.append(path)
        logger.info(f"Wrote sample bundle {path}")
    return written
