"""Error message normalization and recurrence tracking."""

import hashlib
import re
from typing import List, Optional, Pattern, Tuple

from loguru import logger

from pytest_verdict.domains.reliability.models import ErrorSignature, ResultRecord, ResultStatus, utcnow
from pytest_verdict.domains.reliability.repositories import ResultStore

# Applied in order. Timestamps go before line:column references so that
# clock times are not mistaken for source locations, and addresses go
# before epoch millis so that removing one cannot expose the other.
_REPLACEMENTS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"), "<TIMESTAMP>"),
    (re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE), "<UUID>"),
    (re.compile(r"0x[0-9a-f]+", re.IGNORECASE), "<ADDR>"),
    (re.compile(r"\b\d{13}\b"), "<TIMESTAMP>"),
    (re.compile(r"(localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1\]):\d+"), r"\1:<PORT>"),
    (re.compile(r"/private/var/folders/\S+"), "/private/var/folders/<TEMP>"),
    (re.compile(r"(?<!/private)/var/folders/\S+"), "/var/folders/<TEMP>"),
    (re.compile(r"/tmp/\S+"), "/tmp/<TEMP>"),
    (re.compile(r":\d+:\d+"), ":<LINE>"),
    (re.compile(r":\d+(?=\s|$|\))"), ":<LINE>"),
]
_WHITESPACE = re.compile(r"\s+")


class ErrorFingerprinter:
    """Turns free-text failure messages into a stable identity."""

    def normalize(self, message: Optional[str]) -> str:
        if not message:
            return ""

        normalized = message
        for pattern, replacement in _REPLACEMENTS:
            normalized = pattern.sub(replacement, normalized)
        return _WHITESPACE.sub(" ", normalized).strip()

    def fingerprint(self, message: Optional[str]) -> str:
        """SHA-256 hex digest of the normalized message."""
        return hashlib.sha256(self.normalize(message).encode("utf-8")).hexdigest()

    def has_signature(self, message: Optional[str]) -> bool:
        """An empty normalized message is not a valid match key."""
        return bool(self.normalize(message))


_default_fingerprinter = ErrorFingerprinter()


def normalize_error_message(message: Optional[str]) -> str:
    return _default_fingerprinter.normalize(message)


def fingerprint_error(message: Optional[str]) -> str:
    return _default_fingerprinter.fingerprint(message)


class SignatureTracker:
    """Maintains ErrorSignature rows as attempts are recorded.

    A failing attempt with a message upserts the signature of that message and
    marks it as awaiting a pass. A passing attempt credits every awaiting
    signature of the same test with one "passed after" occurrence.
    """

    def __init__(self, store: ResultStore, fingerprinter: Optional[ErrorFingerprinter] = None):
        self.store = store
        self.fingerprinter = fingerprinter or _default_fingerprinter

    def observe(self, record: ResultRecord) -> Optional[ErrorSignature]:
        if record.status.is_failure:
            return self._record_failure(record)
        if record.status == ResultStatus.PASSED:
            self._record_pass(record)
        return None

    def _record_failure(self, record: ResultRecord) -> Optional[ErrorSignature]:
        if not self.fingerprinter.has_signature(record.error_message):
            return None

        signature_hash = self.fingerprinter.fingerprint(record.error_message)
        existing = self.store.get_signature(record.test_id, signature_hash)
        if existing is None:
            signature = ErrorSignature(
                test_id=record.test_id,
                signature_hash=signature_hash,
                normalized_message=self.fingerprinter.normalize(record.error_message),
                first_seen_at=record.started_at,
                last_seen_at=record.started_at,
            )
        else:
            signature = existing.model_copy(update={
                "occurrence_count": existing.occurrence_count + 1,
                "awaiting_pass": True,
                "last_seen_at": record.started_at,
            })

        self.store.save_signature(signature)
        logger.debug(
            f"Signature {signature_hash[:12]} of test {record.test_id} seen {signature.occurrence_count}x"
        )
        return signature

    def _record_pass(self, record: ResultRecord) -> None:
        for signature in self.store.signatures_for_test(record.test_id):
            if not signature.awaiting_pass:
                continue
            self.store.save_signature(signature.model_copy(update={
                "passed_after_count": signature.passed_after_count + 1,
                "awaiting_pass": False,
                "last_seen_at": utcnow(),
            }))
