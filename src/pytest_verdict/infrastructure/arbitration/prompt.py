"""Prompt templates for failure arbitration."""

import re
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from loguru import logger
from pydantic import BaseModel

from pytest_verdict.domains.reliability.models import utcnow

DEFAULT_PROMPT_TEMPLATE = """You are reviewing a failed automated test to decide whether the failure is flaky (intermittent) or a real bug.

TEST: {{testTitle}}
FILE: {{filePath}}

ERROR MESSAGE:
{{errorMessage}}

STACK TRACE (truncated):
{{stackTrace}}

RECENT RESULTS (newest first):
{{recentHistory}}

THE SAME ERROR ON OTHER TESTS:
{{similarErrors}}

HEURISTIC CONFIDENCE THAT THIS IS FLAKY: {{heuristicScore}}%
HEURISTIC REASONING: {{heuristicReasoning}}

Decide:
1. Is this a FLAKY failure (timing, race condition, unstable dependency or environment) or a REAL BUG (deterministic failure caused by a code defect)?
2. By how much should the heuristic confidence change given the error and the history?

Answer with a single JSON object and nothing else:
{"verdict": "flaky" or "real_bug", "confidence_adjustment": number from -20 to 20, "reasoning": "one sentence"}"""

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
MAX_STACK_LINES = 15


def truncate_stack_trace(stack: Optional[str], max_lines: int = MAX_STACK_LINES) -> str:
    if not stack:
        return "No stack trace"
    lines = stack.split("\n")
    if len(lines) <= max_lines:
        return stack
    return "\n".join(lines[:max_lines]) + f"\n... ({len(lines) - max_lines} more lines)"


class PromptVariables(BaseModel):
    """Values substituted into the arbitration prompt."""
    test_title: str
    file_path: str
    error_message: str = ""
    stack_trace: str = ""
    recent_history: str = ""
    similar_errors: str = ""
    heuristic_score: int = 0
    heuristic_reasoning: str = ""

    def as_mapping(self) -> Dict[str, str]:
        return {
            "testTitle": self.test_title,
            "filePath": self.file_path,
            "errorMessage": self.error_message or "No error message",
            "stackTrace": truncate_stack_trace(self.stack_trace),
            "recentHistory": self.recent_history or "No history available",
            "similarErrors": self.similar_errors or "No similar errors found",
            "heuristicScore": str(self.heuristic_score),
            "heuristicReasoning": self.heuristic_reasoning,
        }


class PromptTemplate(BaseModel):
    text: str
    version: int = 0
    created_at: Optional[str] = None

    @property
    def placeholders(self) -> List[str]:
        seen: List[str] = []
        for name in PLACEHOLDER.findall(self.text):
            if name not in seen:
                seen.append(name)
        return seen

    def render(self, variables: Mapping[str, str]) -> str:
        """Substitutes {{name}} placeholders. Unknown names are left as they are."""
        def substitute(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name in variables:
                return str(variables[name])
            return match.group(0)

        return PLACEHOLDER.sub(substitute, self.text)


DEFAULT_TEMPLATE = PromptTemplate(text=DEFAULT_PROMPT_TEMPLATE, version=0)


class PromptSource(Protocol):
    def active(self) -> Optional[PromptTemplate]:
        ...


class InMemoryPromptStore:
    """Versioned, user-editable prompt templates.

    Saving a template makes it the active one and notifies listeners so that
    caches can be dropped.
    """

    def __init__(self):
        self._versions: List[PromptTemplate] = []
        self._active: Optional[PromptTemplate] = None
        self._listeners: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def save(self, text: str) -> PromptTemplate:
        with self._lock:
            template = PromptTemplate(
                text=text,
                version=len(self._versions) + 1,
                created_at=utcnow().isoformat(),
            )
            self._versions.append(template)
            self._active = template
        logger.info(f"Saved prompt template version {template.version}")
        self._notify()
        return template

    def restore_default(self) -> None:
        with self._lock:
            self._active = None
        logger.info("Restored default prompt template")
        self._notify()

    def active(self) -> Optional[PromptTemplate]:
        return self._active

    def versions(self) -> List[PromptTemplate]:
        return list(self._versions)

    def _notify(self) -> None:
        for listener in self._listeners:
            listener()


class PromptProvider:
    """Caches the active template for a short time.

    Falls back to the built-in template when the source has no active
    template or cannot be read.
    """

    def __init__(
        self,
        source: Optional[PromptSource] = None,
        ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.ttl = ttl
        self._clock = clock
        self._cached: Optional[PromptTemplate] = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

        if isinstance(source, InMemoryPromptStore):
            source.add_listener(self.invalidate)

    def get_template(self) -> PromptTemplate:
        now = self._clock()
        with self._lock:
            if self._cached is not None and now - self._cached_at < self.ttl:
                return self._cached

            template = self._load()
            self._cached = template
            self._cached_at = now
            return template

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = 0.0

    def render(self, variables: PromptVariables) -> str:
        return self.get_template().render(variables.as_mapping())

    def _load(self) -> PromptTemplate:
        if self.source is None:
            return DEFAULT_TEMPLATE
        try:
            template = self.source.active()
        except Exception as e:
            logger.warning(f"Could not load the active prompt template, using default: {e}")
            return DEFAULT_TEMPLATE
        if template is None or not template.text:
            return DEFAULT_TEMPLATE
        return template
