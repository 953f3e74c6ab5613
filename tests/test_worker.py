"""Tests for the processing orchestrator: checkpoints, failure handling, sync path."""
import json

import pytest

from app.ingest.errors import ProcessingFailed
from app.ingest.jobs import JobRegistry
from app.ingest.record_stats import aggregate, enrich
from app.ingest.worker import (
    AGGREGATION_DONE,
    AGGREGATION_STARTED,
    ENRICHMENT_DONE,
    ProcessingOrchestrator,
    load_document,
)
from conftest import make_records


class RecordingRegistry(JobRegistry):
    """Registry that remembers every progress value a job passes through."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.seen = []

    def advance(self, job_id, progress):
        value = super().advance(job_id, progress)
        self.seen.append(value)
        return value


@pytest.fixture
def registry(clock):
    return RecordingRegistry(clock=clock)


def _processing_job(registry):
    job_id = registry.create(0)
    registry.begin_processing(job_id)
    return job_id


def test_background_run_hits_checkpoints_in_order(registry, geo_document):
    orchestrator = ProcessingOrchestrator(registry)
    job_id = _processing_job(registry)

    orchestrator.run_in_background(job_id, make_records(10), geo_document, {"state": "PA"})

    assert registry.seen == [AGGREGATION_STARTED, AGGREGATION_DONE, ENRICHMENT_DONE]
    job = registry.get(job_id)
    assert job.status == "completed"
    assert job.progress == 100
    assert job.state.result["totalRecords"] == 10
    assert job.state.result["processingMethod"] == "background"
    assert job.state.result["enrichment"]["location"] == {"state": "PA"}


def test_background_without_enrichment_skips_that_checkpoint(registry, geo_document):
    orchestrator = ProcessingOrchestrator(registry)
    job_id = _processing_job(registry)
    orchestrator.run_in_background(job_id, make_records(3), geo_document, None)
    assert registry.seen == [AGGREGATION_STARTED, AGGREGATION_DONE]
    assert "enrichment" not in registry.get(job_id).state.result


def test_background_accepts_reassembled_bytes(registry, geo_document):
    orchestrator = ProcessingOrchestrator(registry)
    job_id = _processing_job(registry)
    payload = json.dumps(make_records(4)).encode("utf-8")
    orchestrator.run_in_background(job_id, payload, geo_document, None)
    assert registry.get(job_id).state.result["totalRecords"] == 4


def test_aggregator_failure_marks_job_error(registry, geo_document):
    def broken(records, geo):
        raise RuntimeError("district table unavailable")

    orchestrator = ProcessingOrchestrator(registry, aggregator=broken)
    job_id = _processing_job(registry)
    orchestrator.run_in_background(job_id, make_records(2), geo_document, None)

    job = registry.get(job_id)
    assert job.status == "error"
    assert "district table unavailable" in job.state.message
    assert job.progress < 100


def test_enricher_failure_marks_job_error(registry, geo_document):
    def broken(summary, request):
        raise KeyError("census")

    orchestrator = ProcessingOrchestrator(registry, enricher=broken)
    job_id = _processing_job(registry)
    orchestrator.run_in_background(job_id, make_records(2), geo_document, {"state": "PA"})

    job = registry.get(job_id)
    assert job.status == "error"
    assert registry.seen == [AGGREGATION_STARTED, AGGREGATION_DONE]


def test_invalid_json_bytes_fail_the_job(registry, geo_document):
    orchestrator = ProcessingOrchestrator(registry)
    job_id = _processing_job(registry)
    orchestrator.run_in_background(job_id, b"[{not json", geo_document, None)
    assert registry.get(job_id).status == "error"


def test_late_result_after_watchdog_is_dropped(registry, clock, geo_document):
    orchestrator = ProcessingOrchestrator(registry)
    job_id = _processing_job(registry)
    clock.advance(10_000)
    registry.sweep()

    orchestrator.run_in_background(job_id, make_records(2), geo_document, None)
    assert registry.get(job_id).state.code == "timeout"


def test_run_synchronous_wraps_collaborator_errors(registry, geo_document):
    def broken(records, geo):
        raise ValueError("bad record")

    with pytest.raises(ProcessingFailed) as exc:
        ProcessingOrchestrator(registry, aggregator=broken).run_synchronous(make_records(1), geo_document)
    assert exc.value.details["cause"] == "ValueError"


def test_load_document_passthrough():
    assert load_document([1, 2]) == [1, 2]
    with pytest.raises(ProcessingFailed):
        load_document(b"\xff\xfe")


def test_default_aggregate_joins_boundaries(geo_document):
    summary = aggregate(make_records(6, districts=("P1", "P2", "P9")), geo_document)
    assert summary["districtCount"] == 3
    assert summary["districts"]["P1"]["records"] == 2
    assert summary["unmatchedDistricts"] == ["P9"]
    assert summary["districtsWithoutRecords"] == ["P3"]
    assert summary["featureCount"] == 3


def test_default_enrich_estimates_registration(geo_document):
    summary = aggregate(make_records(10), geo_document)
    enriched = enrich(summary, {"state": "PA", "votingAgePopulation": 40})
    assert enriched["enrichment"]["registrationRate"] == 25.0
    assert sum(enriched["enrichment"]["estimatedUnregistered"].values()) == 30
