import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.ingest.errors import JobAlreadyFinalized, PipelineError, ProcessingFailed
from app.ingest.jobs import JobRegistry
from app.ingest.record_stats import Aggregator, Enricher, Summary, aggregate, enrich

logger = logging.getLogger(__name__)

AGGREGATION_STARTED = 60.0
AGGREGATION_DONE = 80.0
ENRICHMENT_DONE = 90.0


def load_document(document: Any) -> Any:
    """Parse a reassembled payload (UTF-8 JSON bytes); already-parsed documents pass through."""
    if isinstance(document, (bytes, bytearray)):
        try:
            return json.loads(bytes(document).decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ProcessingFailed(f"Uploaded document is not valid UTF-8 JSON: {e}", cause=e)
    return document


class ProcessingOrchestrator:
    """Runs aggregation (and optional enrichment) for the sync path and for registry-tracked background jobs.
    Why available: Single pipeline behind /process/sync, /process/background and chunked finalize, so every path produces the same summary."""

    def __init__(
        self,
        registry: JobRegistry,
        aggregator: Aggregator = aggregate,
        enricher: Enricher = enrich,
    ):
        self.registry = registry
        self.aggregator = aggregator
        self.enricher = enricher

    def _aggregate(self, document: Any, geo_document: Any) -> Summary:
        try:
            return self.aggregator(document, geo_document)
        except PipelineError:
            raise
        except Exception as e:
            raise ProcessingFailed(f"Aggregation failed: {e}", cause=e)

    def _enrich(self, summary: Summary, enrichment_request: Dict[str, Any]) -> Summary:
        try:
            return self.enricher(summary, enrichment_request)
        except PipelineError:
            raise
        except Exception as e:
            raise ProcessingFailed(f"Enrichment failed: {e}", cause=e)

    def run_synchronous(
        self,
        document: Any,
        geo_document: Any,
        enrichment_request: Optional[Dict[str, Any]] = None,
    ) -> Summary:
        """Aggregate, then enrich when requested. Collaborator errors surface as ProcessingFailed; no retry."""
        summary = self._aggregate(load_document(document), geo_document)
        if enrichment_request:
            summary = self._enrich(summary, enrichment_request)
        return summary

    def run_in_background(
        self,
        job_id: str,
        document: Any,
        geo_document: Any,
        enrichment_request: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Same pipeline as run_synchronous for a job already in Processing. Records the outcome on the job; never raises."""
        try:
            logger.info("Background processing started for job %s", job_id)
            self.registry.advance(job_id, AGGREGATION_STARTED)
            summary = self._aggregate(load_document(document), geo_document)
            self.registry.advance(job_id, AGGREGATION_DONE)
            if enrichment_request:
                summary = self._enrich(summary, enrichment_request)
                self.registry.advance(job_id, ENRICHMENT_DONE)
            self.registry.complete(job_id, stamp(summary, "background"))
        except JobAlreadyFinalized as e:
            # the watchdog (or another writer) already settled this job
            logger.warning("Dropping late result for job %s: %s", job_id, e.message)
        except Exception as e:
            message = e.message if isinstance(e, PipelineError) else str(e) or type(e).__name__
            logger.exception("Background processing failed for job %s", job_id)
            try:
                self.registry.fail(job_id, message)
            except PipelineError as late:
                logger.warning("Could not record failure for job %s: %s", job_id, late.message)


def stamp(summary: Summary, method: str) -> Summary:
    """Copy of the summary tagged with how and when it was produced."""
    out = dict(summary)
    out["processingMethod"] = method
    out["processedAt"] = datetime.now(timezone.utc).isoformat()
    return out
