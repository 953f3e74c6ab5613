"""
Default aggregation and enrichment collaborators.

aggregate() tallies uploaded records per district and joins the district keys to
the boundary features of a GeoJSON document. enrich() attaches reference data
(location and, when supplied, voting-age population) to an existing summary.
Both are placeholders behind the Aggregator / Enricher contracts; deployments
inject their own.
"""
from collections import Counter, defaultdict
from typing import Any, Callable, Dict, List

Summary = Dict[str, Any]
Aggregator = Callable[[Any, Any], Summary]
Enricher = Callable[[Summary, Dict[str, Any]], Summary]

DISTRICT_KEYS = ("Precinct", "precinct", "District", "district")
FEATURE_KEYS = ("precinct", "Precinct", "PRECINCT", "district", "District", "id", "name", "NAME")
VOTED_KEYS = ("Voted", "voted", "VotedInLastElection")
PARTY_KEYS = ("Party", "party")
AGE_KEYS = ("Age", "age")


def _first(record: Dict[str, Any], keys) -> Any:
    for k in keys:
        if k in record and record[k] not in (None, ""):
            return record[k]
    return None


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("y", "yes", "true", "1", "voted")
    return bool(value)


def _feature_keys(geo_document: Any) -> List[str]:
    """District identifiers found in feature properties, in document order."""
    keys: List[str] = []
    for feature in (geo_document or {}).get("features") or []:
        props = (feature or {}).get("properties") or {}
        key = _first(props, FEATURE_KEYS)
        if key is not None:
            keys.append(str(key))
    return keys


def aggregate(records: Any, geo_document: Any) -> Summary:
    """Per-district record counts, turnout, party split and mean age, plus boundary coverage.
    Why available: Default `aggregate` collaborator so the service produces a usable summary without a custom one."""
    if not isinstance(records, list):
        raise ValueError("records document must be a JSON array")

    counts: Counter = Counter()
    voted: Counter = Counter()
    parties: Dict[str, Counter] = defaultdict(Counter)
    age_totals: Dict[str, float] = defaultdict(float)
    age_counts: Counter = Counter()
    without_district = 0

    for record in records:
        if not isinstance(record, dict):
            raise ValueError("every record must be a JSON object")
        district = _first(record, DISTRICT_KEYS)
        if district is None:
            without_district += 1
            continue
        d = str(district)
        counts[d] += 1
        if _truthy(_first(record, VOTED_KEYS)):
            voted[d] += 1
        party = _first(record, PARTY_KEYS)
        if party is not None:
            parties[d][str(party)] += 1
        age = _first(record, AGE_KEYS)
        if isinstance(age, (int, float)) and not isinstance(age, bool):
            age_totals[d] += age
            age_counts[d] += 1

    districts = {}
    for d in sorted(counts):
        districts[d] = {
            "records": counts[d],
            "voted": voted[d],
            "turnoutPercentage": round(100 * voted[d] / counts[d]) if counts[d] else 0,
            "partyAffiliation": dict(parties[d]),
            "averageAge": round(age_totals[d] / age_counts[d], 1) if age_counts[d] else None,
        }

    boundary_keys = _feature_keys(geo_document)
    boundary_set = set(boundary_keys)
    total_voted = sum(voted.values())
    total = sum(counts.values())

    return {
        "totalRecords": len(records),
        "recordsWithoutDistrict": without_district,
        "districtCount": len(districts),
        "districts": districts,
        "featureCount": len((geo_document or {}).get("features") or []),
        "unmatchedDistricts": [d for d in districts if d not in boundary_set],
        "districtsWithoutRecords": sorted(set(boundary_keys) - set(districts)),
        "summaryStatistics": [
            {"label": "Total Records", "value": len(records)},
            {"label": "Districts", "value": len(districts)},
            {"label": "Overall Turnout", "value": f"{round(100 * total_voted / total) if total else 0}%"},
        ],
    }


def enrich(summary: Summary, enrichment_request: Dict[str, Any]) -> Summary:
    """Attach reference data to a summary. When votingAgePopulation is given, estimate the registration
    rate and spread unregistered population over districts in proportion to their record counts."""
    enriched = dict(summary)
    location = {k: enrichment_request[k] for k in ("state", "county", "stateName", "countyName") if k in enrichment_request}
    reference: Dict[str, Any] = {"location": location}

    vap = enrichment_request.get("votingAgePopulation")
    if isinstance(vap, (int, float)) and not isinstance(vap, bool) and vap > 0:
        districts = summary.get("districts") or {}
        registered = sum(d.get("records", 0) for d in districts.values())
        unregistered_total = max(0, int(vap) - registered)
        unregistered: Dict[str, int] = {}
        for key, d in districts.items():
            share = d.get("records", 0) / registered if registered else 0
            unregistered[key] = round(unregistered_total * share)
        reference.update({
            "votingAgePopulation": int(vap),
            "registrationRate": round(100 * registered / vap, 1),
            "estimatedUnregistered": unregistered,
        })

    enriched["enrichment"] = reference
    return enriched
