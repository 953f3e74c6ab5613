"""Shape checks for record and boundary documents, run before any job is created."""
from dataclasses import dataclass, field
from typing import Any, Dict, List

from app.ingest.errors import InvalidInput

SAMPLE_SIZE = 100


@dataclass
class ValidationReport:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings, "count": self.count}


def validate_records(document: Any) -> ValidationReport:
    """Record document must be a non-empty JSON array of objects. Only the first SAMPLE_SIZE records are inspected."""
    if document is None:
        return ValidationReport(valid=False, errors=["record document is missing"])
    if not isinstance(document, list):
        return ValidationReport(valid=False, errors=["record document must be a JSON array"])
    if not document:
        return ValidationReport(valid=False, errors=["record document is empty"])

    errors: List[str] = []
    warnings: List[str] = []
    sample = document[:SAMPLE_SIZE]
    bad = [i for i, r in enumerate(sample) if not isinstance(r, dict)]
    if bad:
        errors.append(f"records at positions {bad[:10]} are not JSON objects")
    elif not any(("Precinct" in r or "precinct" in r or "District" in r or "district" in r) for r in sample):
        warnings.append("no district field (Precinct/District) found in sampled records")
    return ValidationReport(valid=not errors, errors=errors, warnings=warnings, count=len(document))


def validate_geo_document(geo_document: Any) -> ValidationReport:
    """Boundary document must be a GeoJSON object with a `features` array."""
    if geo_document is None:
        return ValidationReport(valid=False, errors=["geo document is missing"])
    if not isinstance(geo_document, dict):
        return ValidationReport(valid=False, errors=["geo document must be a JSON object"])
    features = geo_document.get("features")
    if not isinstance(features, list):
        return ValidationReport(valid=False, errors=["invalid GeoJSON: `features` must be an array"])

    warnings: List[str] = []
    if geo_document.get("type") not in (None, "FeatureCollection"):
        warnings.append(f"unexpected GeoJSON type {geo_document.get('type')!r}")
    if not features:
        warnings.append("geo document has no features")
    missing_geometry = sum(1 for f in features[:SAMPLE_SIZE] if not isinstance(f, dict) or not f.get("geometry"))
    if missing_geometry:
        warnings.append(f"{missing_geometry} sampled features have no geometry")
    return ValidationReport(valid=True, warnings=warnings, count=len(features))


def require_valid(records: Any, geo_document: Any, *, geo_only: bool = False) -> None:
    """Raise InvalidInput for the first failing document. A missing (None) record document fails
    unless geo_only is set, for routes whose records arrive later as chunks."""
    reports = {"geoDocument": validate_geo_document(geo_document)}
    if not geo_only:
        reports["document"] = validate_records(records)
    for name, report in reports.items():
        if not report.valid:
            raise InvalidInput(f"{name}: {'; '.join(report.errors)}", {name: report.to_dict()})
