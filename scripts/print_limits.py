#!/usr/bin/env python3
"""Print chunking, strategy and timeout limits (from config). Run from repo root: python scripts/print_limits.py"""
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from app.core.config import settings
from app.ingest.strategy import MB, Strategy, StrategyPolicy, select_strategy


def main():
    """Print chunk size, strategy thresholds, upload/job timeouts and rate limit, plus sample strategy picks."""
    policy = StrategyPolicy(
        sync_max_bytes=settings.sync_max_bytes,
        background_max_bytes=settings.background_max_bytes,
    )
    print("Ingestion & API limits")
    print("----------------------")
    print(f"  CHUNK_SIZE_BYTES            = {settings.chunk_size_bytes} ({settings.chunk_size_bytes / MB:g} MiB per chunk)")
    print(f"  MAX_CHUNK_REQUEST_KB        = {settings.max_chunk_request_kb} KB (413 above this)")
    print(f"  SYNC_MAX_BYTES              = {policy.sync_max_bytes} ({policy.sync_max_bytes / MB:g} MiB)")
    print(f"  BACKGROUND_MAX_BYTES        = {policy.background_max_bytes} ({policy.background_max_bytes / MB:g} MiB)")
    print(f"  UPLOAD_TIMEOUT_SECONDS      = {settings.upload_timeout_seconds:g} s")
    print(f"  JOB_EVICTION_DELAY_SECONDS  = {settings.job_eviction_delay_seconds:g} s (after first terminal poll)")
    print(f"  JOB_RETENTION_SECONDS       = {settings.job_retention_seconds:g} s (unpolled terminal jobs)")
    print(f"  JOB_MAX_PROCESSING_SECONDS  = {settings.job_max_processing_seconds:g} s (watchdog)")
    print(f"  Rate limit                  = {settings.rate_limit_requests} requests / {settings.rate_limit_window_seconds} s (per client IP)")
    print("")
    print("Strategy by payload size")
    for size_mb in (1, 4, 20, 75):
        strategy: Strategy = select_strategy(size_mb * MB, policy)
        print(f"  {size_mb:>4} MiB -> {strategy.value}")
    print("")
    print("Env: CHUNK_SIZE_BYTES, SYNC_MAX_BYTES, BACKGROUND_MAX_BYTES, UPLOAD_TIMEOUT_SECONDS, JOB_* (see .env)")


if __name__ == "__main__":
    main()
