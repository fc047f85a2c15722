# parsekit/http/batch.py
from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from parsekit.errors import ParseError

logger = logging.getLogger("parse.batch")

BATCH_METHODS = ("GET", "POST", "PUT", "DELETE")
DEFAULT_BATCH_SIZE = 50
DEFAULT_WORKERS = 2


@dataclass
class BatchRequest:
    """One sub-operation. `path` is client-relative (classes/Song/abc)."""

    method: str
    path: str
    body: Optional[Dict[str, Any]] = None
    tag: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        self.method = str(self.method).upper()
        if self.method not in BATCH_METHODS:
            raise ValueError(f"Invalid method {self.method} for request: {self.path!r}")
        if not self.path:
            raise ValueError("batch request path is required")

    def signature(self) -> Tuple[str, str, str]:
        return (self.method, self.path, json.dumps(self.body, sort_keys=True, default=str))

    def as_json(self) -> Dict[str, Any]:
        h: Dict[str, Any] = {"method": self.method, "path": self.path}
        if self.body is not None:
            h["body"] = self.body
        return h

    def __str__(self) -> str:
        return f"{self.method} {self.path}"


@dataclass
class BatchOutcome:
    """Result of one sub-operation; failures are data, not exceptions."""

    request: BatchRequest
    success: bool
    result: Any = None
    code: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_response(cls, request: BatchRequest, response: Any) -> "BatchOutcome":
        if response is None:
            return cls(request, False, code=None, error="missing response for sub-request")
        if getattr(response, "success", False):
            return cls(request, True, result=response.result)
        return cls(request, False, code=response.code, error=response.error)

    @classmethod
    def failed(cls, request: BatchRequest, error: str, code: Optional[int] = None) -> "BatchOutcome":
        return cls(request, False, code=code, error=error)


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchExecutor:
    """
    Splits write operations into server-sized chunks and runs the chunks on a
    bounded thread pool. Outcomes come back in input order; a chunk whose
    transport fails (after the client's own retries) marks each of its
    operations failed, and partial successes inside a chunk are not retried.
    """

    def __init__(
        self,
        client: Any,
        batch_size: Optional[int] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        settings = getattr(client, "settings", None)
        self.client = client
        self.batch_size = int(batch_size or getattr(settings, "batch_size", DEFAULT_BATCH_SIZE))
        self.max_workers = int(max_workers or getattr(settings, "batch_workers", DEFAULT_WORKERS))
        if self.batch_size <= 0 or self.max_workers <= 0:
            raise ValueError("batch_size and max_workers must be positive")

    def plan(self, requests: Iterable[BatchRequest]) -> Tuple[List[BatchRequest], List[int]]:
        """
        Deduplicate by signature; returns (unique requests, input index -> unique index).
        POSTs are never merged since each one creates a distinct object.
        """
        unique: List[BatchRequest] = []
        index_of: Dict[Tuple[str, str, str], int] = {}
        mapping: List[int] = []
        for req in requests:
            if not isinstance(req, BatchRequest):
                raise TypeError(f"expected BatchRequest, got {type(req).__name__}")
            if req.method == "POST":
                mapping.append(len(unique))
                unique.append(req)
                continue
            sig = req.signature()
            if sig not in index_of:
                index_of[sig] = len(unique)
                unique.append(req)
            mapping.append(index_of[sig])
        return unique, mapping

    def _run_chunk(self, chunk: List[BatchRequest], deadline: Optional[float]) -> List[BatchOutcome]:
        responses = self.client.batch_request(chunk, deadline=deadline)
        outcomes = [
            BatchOutcome.from_response(req, responses[i] if i < len(responses) else None)
            for i, req in enumerate(chunk)
        ]
        return outcomes

    def execute(
        self, requests: Iterable[BatchRequest], timeout: Optional[float] = None
    ) -> List[BatchOutcome]:
        requests = list(requests)
        if not requests:
            return []
        unique, mapping = self.plan(requests)
        chunks = chunked(unique, self.batch_size)
        deadline = None if timeout is None else time.monotonic() + timeout
        logger.info(
            "batch.submit",
            extra={"event": {"operations": len(requests), "unique": len(unique), "chunks": len(chunks)}},
        )

        chunk_results: List[Optional[List[BatchOutcome]]] = [None] * len(chunks)
        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(chunks)))
        try:
            futures = {pool.submit(self._run_chunk, chunk, deadline): i for i, chunk in enumerate(chunks)}
            done, not_done = wait(futures, timeout=timeout)
            for fut in done:
                i = futures[fut]
                try:
                    chunk_results[i] = fut.result()
                except (ParseError, ValueError, OSError) as e:
                    logger.warning("batch.chunk_failed chunk=%d err=%s", i, e)
                    code = getattr(e, "code", None)
                    chunk_results[i] = [BatchOutcome.failed(r, str(e), code) for r in chunks[i]]
            for fut in not_done:
                i = futures[fut]
                fut.cancel()
                logger.warning("batch.chunk_timeout chunk=%d", i)
                chunk_results[i] = [
                    BatchOutcome.failed(r, f"batch chunk timed out after {timeout}s")
                    for r in chunks[i]
                ]
        finally:
            # don't block on chunks that outlived the deadline
            pool.shutdown(wait=False, cancel_futures=True)

        flat: List[BatchOutcome] = []
        for res in chunk_results:
            flat.extend(res or [])
        # duplicates share the outcome of their first occurrence, but keep their own request
        outcomes = []
        for req, idx in zip(requests, mapping):
            base = flat[idx]
            outcomes.append(
                base if base.request is req else BatchOutcome(req, base.success, base.result, base.code, base.error)
            )
        failed = sum(1 for o in outcomes if not o.success)
        if failed:
            logger.warning("batch.partial_failure failed=%d total=%d", failed, len(outcomes))
        return outcomes

    # ---- record helpers ----

    def save(self, records: Iterable[Any], force: bool = False) -> bool:
        """Batch-save records and merge each successful result back into its record."""
        reqs: List[BatchRequest] = []
        for r in records:
            reqs.extend(r.change_requests(force))
        outcomes = self.execute(reqs)
        for o in outcomes:
            record = o.request.tag
            if o.success and record is not None and hasattr(record, "apply_saved"):
                record.apply_saved(o.result if isinstance(o.result, dict) else {})
        return all(o.success for o in outcomes)

    def destroy(self, records: Iterable[Any]) -> bool:
        reqs = [r for r in (rec.destroy_request() for rec in records) if r is not None]
        return all(o.success for o in self.execute(reqs))


