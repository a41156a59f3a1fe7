"""
Audit log for CuraNet
Append-only, hash-chained trail of access decisions and consent mutations
"""

from collections import deque
from typing import Any, Deque, Dict, Iterator, Optional
import threading
import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .metadata import ExportMetadata
from .models import AuditAction, AuditEntry, AuditFilters, AuditPage, AuditSummary
from .storage import AuditStorage, AuditStorageError
from ..config import SecurityConfig, get_security_config
from ..crypto.hash import genesis_hash
from ..exceptions import AuditWriteError, ValidationError
from ..utils.clock import Clock, SystemClock, ensure_utc

logger = structlog.get_logger(__name__)


class AuditLog:
    """Audit logging system with integrity protection"""

    def __init__(self, storage: Optional[AuditStorage] = None,
                 clock: Optional[Clock] = None,
                 config: Optional[SecurityConfig] = None):
        self.config = config or get_security_config()
        self.storage = storage or AuditStorage(self.config.database_url)
        self.clock = clock or SystemClock()

        # Serialises chain extension within this process
        self._chain_lock = threading.Lock()
        self._pending: Deque[AuditEntry] = deque()
        self._pending_lock = threading.Lock()
        # Held by whichever thread is draining the queue
        self._drain_lock = threading.Lock()

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.audit_write_attempts),
            wait=wait_exponential(
                multiplier=self.config.audit_retry_min_wait,
                min=self.config.audit_retry_min_wait,
                max=self.config.audit_retry_max_wait,
            ),
            retry=retry_if_exception_type(AuditStorageError),
            before_sleep=lambda state: logger.warning(
                "Retrying audit write",
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
            reraise=True,
        )

    def _write(self, entry: AuditEntry) -> AuditEntry:
        with self._chain_lock:
            previous_hash = self.storage.last_hash() or genesis_hash()
            chained = entry.model_copy(update={
                "previous_hash": previous_hash,
                "hash": entry.compute_hash(previous_hash),
            })
            return self.storage.insert(chained)

    def build_entry(self, **fields: Any) -> AuditEntry:
        """Create an entry stamped with the injected clock"""
        fields.setdefault("timestamp", self.clock.now())
        fields["timestamp"] = ensure_utc(fields["timestamp"])
        return AuditEntry(**fields)

    def append(self, entry: AuditEntry) -> str:
        """
        Durably append an entry, retrying with backoff.

        A successful write means the store is reachable, so any entries
        queued during an outage are drained right after it.

        Raises:
            AuditWriteError: the store stayed unavailable after every attempt
        """
        audit_id = self._append(entry)
        if self.pending_count:
            self.flush_pending()
        return audit_id

    def _append(self, entry: AuditEntry) -> str:
        try:
            stored = self._retrying()(self._write, entry)
        except AuditStorageError as e:
            logger.error("Audit write failed",
                         audit_id=entry.id,
                         action=entry.action.value,
                         attempts=self.config.audit_write_attempts,
                         error=str(e))
            raise AuditWriteError(action=entry.action.value, reason=str(e)) from e

        logger.info("Audit entry appended",
                    audit_id=stored.id,
                    action=stored.action.value,
                    actor_id=stored.actor_id,
                    subject_id=stored.subject_id)
        return stored.id

    def record(self, **fields: Any) -> str:
        """Build and append an entry in one call"""
        return self.append(self.build_entry(**fields))

    # ------------------------------------------------------------------
    # Deferred writes
    # ------------------------------------------------------------------

    def defer(self, entry: AuditEntry) -> None:
        """Queue an entry that could not be written for a later flush"""
        with self._pending_lock:
            self._pending.append(entry)
            pending = len(self._pending)

        logger.warning("Audit entry queued for later write",
                       audit_id=entry.id,
                       action=entry.action.value,
                       pending=pending)

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def flush_pending(self) -> int:
        """Write queued entries in order, stopping at the first failure"""
        if not self._drain_lock.acquire(blocking=False):
            return 0

        try:
            flushed = self._drain()
        finally:
            self._drain_lock.release()

        if flushed:
            logger.info("Flushed pending audit entries", count=flushed, remaining=self.pending_count)
        return flushed

    def _drain(self) -> int:
        flushed = 0
        while True:
            with self._pending_lock:
                if not self._pending:
                    break
                entry = self._pending.popleft()

            try:
                self._append(entry)
            except AuditWriteError:
                with self._pending_lock:
                    self._pending.appendleft(entry)
                break
            flushed += 1
        return flushed

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    def query(self, filters: Optional[AuditFilters] = None, page: int = 1,
              page_size: Optional[int] = None) -> AuditPage:
        """Paginated entries matching the filters, newest first"""
        filters = filters or AuditFilters()
        page_size = page_size or self.config.audit_page_size_default

        if page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if page_size < 1:
            raise ValidationError("page_size must be at least 1", field="page_size")
        page_size = min(page_size, self.config.audit_page_size_max)

        entries, total = self.storage.query(filters, (page - 1) * page_size, page_size)
        return AuditPage(entries=entries, total=total, page=page, page_size=page_size)

    def export_range(self, filters: Optional[AuditFilters] = None,
                     limit: Optional[int] = None) -> Iterator[AuditEntry]:
        """
        Stream matching entries in chronological order.

        The stream never exceeds ``audit_export_max_rows`` whatever limit is asked for.
        """
        cap = self.config.audit_export_max_rows
        if limit is not None and limit < 1:
            raise ValidationError("limit must be at least 1", field="limit")
        effective = cap if limit is None else min(limit, cap)

        return self.storage.iter_range(filters or AuditFilters(), effective)

    def record_export(self, actor_id: str, filters: AuditFilters, row_count: int,
                      limit: int, actor_role: Optional[str] = None,
                      ip_address: Optional[str] = None) -> str:
        """Audit the act of exporting the audit trail"""
        return self.record(
            subject_id=filters.subject_id or actor_id,
            actor_id=actor_id,
            actor_role=actor_role,
            action=AuditAction.AUDIT_EXPORTED,
            resource_type="audit_log",
            resource_id="export",
            metadata=ExportMetadata(
                filters=filters.model_dump(mode="json", exclude_none=True),
                row_count=row_count,
                limit=limit,
            ),
            ip_address=ip_address,
        )

    def summary(self, filters: Optional[AuditFilters] = None) -> AuditSummary:
        return self.storage.summary(filters or AuditFilters())

    def verify_integrity(self) -> bool:
        """Recompute the hash chain from genesis"""
        previous_hash = genesis_hash()
        count = 0

        for entry in self.storage.iter_chain():
            expected_hash = entry.compute_hash(previous_hash)
            if entry.previous_hash != previous_hash or entry.hash != expected_hash:
                logger.error("Audit integrity violation",
                             audit_id=entry.id,
                             expected_hash=expected_hash,
                             actual_hash=entry.hash)
                return False
            previous_hash = entry.hash
            count += 1

        logger.info("Audit integrity verified", entry_count=count)
        return True

    def export_summary(self, filters: Optional[AuditFilters] = None) -> Dict[str, Any]:
        """Compliance header for an export: counts plus chain status"""
        summary = self.summary(filters)
        return {
            "export_timestamp": self.clock.now().isoformat(),
            "total": summary.total,
            "earliest": summary.earliest.isoformat() if summary.earliest else None,
            "latest": summary.latest.isoformat() if summary.latest else None,
            "integrity_verified": self.verify_integrity(),
        }
