"""Session tracking: the in-flight login attempt and the bounded attempt history."""
from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..core.config import MAX_HISTORY_ENTRIES, Settings
from ..core.models import (
    Attempt,
    FlowType,
    History,
    Outcome,
    Step,
    StepAction,
    StepResult,
    TwoFactorSource,
    parse_datetime,
    utcnow,
)
from ..core.storage import StoreError, exclusive_lock, read_json, set_aside, write_json_atomic
from .sanitize import sanitize_params

logger = logging.getLogger(__name__)

# get_2fa_code "source" param -> where the code came from
TWO_FACTOR_SOURCE_MAP = {
    "messages": TwoFactorSource.SMS,
    "gmail": TwoFactorSource.EMAIL,
}


def generate_attempt_id() -> str:
    return f"login_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def derive_flow_type(steps: List[Step]) -> FlowType:
    fills = [s for s in steps if s.action == StepAction.FILL_CREDENTIALS]
    clicked_next = any(
        s.action == StepAction.CLICK_BUTTON and (s.button_text or "").strip().lower() == "next"
        for s in steps
    )
    if len(fills) > 1 or clicked_next:
        return FlowType.MULTI_STEP
    return FlowType.SINGLE_PAGE


def derive_two_factor(steps: List[Step]) -> Tuple[TwoFactorSource, Optional[str]]:
    """Work out which 2FA channel an attempt used, and the code's sender if known."""
    for step in steps:
        if step.action == StepAction.GET_2FA_CODE:
            source = TWO_FACTOR_SOURCE_MAP.get(str(step.params.get("source", "")), TwoFactorSource.TOTP)
            return source, step.details
    if any(s.action == StepAction.FILL_TOTP for s in steps):
        return TwoFactorSource.TOTP, None
    return TwoFactorSource.NONE, None


def _attempt_time(attempt: Attempt):
    return attempt.completed_at or attempt.started_at


class HistoryStore:
    """Bounded, file-backed log of completed attempts.

    In memory attempts are kept oldest first; the file lists them newest
    first, which is the order the reporting dashboard reads.
    """

    def __init__(self, path: Path, max_entries: int = MAX_HISTORY_ENTRIES):
        self.path = Path(path)
        self.max_entries = max_entries
        self._history = self.load()

    def load(self) -> History:
        try:
            data = read_json(self.path)
        except StoreError as e:
            logger.error(f"Failed to load login history: {e}")
            return History()
        return self._parse(data) if data is not None else History()

    def _parse(self, data: Dict[str, Any]) -> History:
        """Build a History from file data, skipping attempts that do not parse."""
        raw_attempts = data.get("attempts")
        if raw_attempts is None:
            raw_attempts = []
        elif not isinstance(raw_attempts, list):
            logger.error("Ignoring login history: \"attempts\" is not a list")
            raw_attempts = []

        attempts = []
        for raw in raw_attempts:
            try:
                attempts.append(Attempt.from_dict(raw))
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                attempt_id = raw.get("id") if isinstance(raw, dict) else None
                logger.error(f"Skipping malformed login attempt {attempt_id or '?'}: {e}")
        attempts.sort(key=_attempt_time)

        try:
            last_updated = parse_datetime(data.get("lastUpdated")) or utcnow()
        except (ValueError, TypeError, AttributeError):
            last_updated = utcnow()
        return History(version=str(data.get("version") or "1.0"), last_updated=last_updated, attempts=attempts)

    def _payload(self) -> Dict[str, Any]:
        data = self._history.to_dict()
        data["attempts"].reverse()
        return data

    @property
    def attempts(self) -> List[Attempt]:
        return self._history.attempts

    @property
    def history(self) -> History:
        return self._history

    def _trim(self, attempts: List[Attempt]) -> List[Attempt]:
        if len(attempts) > self.max_entries:
            return attempts[-self.max_entries:]
        return attempts

    def append(self, attempt: Attempt) -> bool:
        """Append a sealed attempt and persist it.

        The on-disk history is re-read under the lock so attempts written by
        other processes since our load are kept. A file that cannot be read
        at all is moved aside rather than overwritten.

        Returns:
            bool: True if the history file was written
        """
        self._history.attempts = self._trim(self._history.attempts + [attempt])
        try:
            with exclusive_lock(self.path):
                try:
                    on_disk = read_json(self.path)
                except StoreError as e:
                    logger.error(f"Login history is unreadable: {e}")
                    set_aside(self.path)
                    on_disk = None
                merged = self._parse(on_disk).attempts if on_disk else []
                known = {a.id for a in merged}
                merged.extend(a for a in self._history.attempts if a.id not in known)
                merged.sort(key=_attempt_time)
                self._history.attempts = self._trim(merged)
                self._history.last_updated = utcnow()
                write_json_atomic(self.path, self._payload())
            return True
        except StoreError as e:
            logger.error(f"Failed to save login history: {e}")
            return False

    def clear(self) -> bool:
        self._history = History()
        try:
            with exclusive_lock(self.path):
                write_json_atomic(self.path, self._payload())
            return True
        except StoreError as e:
            logger.error(f"Failed to clear login history: {e}")
            return False


CompletionListener = Callable[[Attempt], Any]


class SessionTracker:
    """Records the steps of the single in-progress login attempt."""

    def __init__(self, store: HistoryStore, on_complete: Optional[CompletionListener] = None):
        self.store = store
        self.on_complete = on_complete
        self._current: Optional[Attempt] = None

    @classmethod
    def from_settings(cls, settings: Settings, on_complete: Optional[CompletionListener] = None) -> 'SessionTracker':
        return cls(HistoryStore(settings.history_file, settings.max_history), on_complete=on_complete)

    @property
    def current_attempt(self) -> Optional[Attempt]:
        return self._current

    def start_attempt(
        self,
        domain: str,
        login_url: Optional[str] = None,
        username: Optional[str] = None,
        item_title: Optional[str] = None,
    ) -> str:
        """Begin tracking a new attempt, closing out any attempt still in progress.

        A stale attempt that logged at least one step is assumed to have
        completed without being reported and is sealed as a success; one with
        no steps is sealed as abandoned.
        """
        stale = self._current
        if stale is not None:
            if stale.steps:
                logger.info(f"Auto-completing previous login attempt for {stale.domain}")
                self.complete_attempt(Outcome.SUCCESS, final_state="Auto-completed when new login started")
            else:
                logger.info(f"Abandoning previous login attempt for {stale.domain}")
                self.complete_attempt(Outcome.ABANDONED, final_state="Abandoned when new login started")

        attempt_id = generate_attempt_id()
        self._current = Attempt(
            id=attempt_id,
            domain=domain,
            login_url=login_url or f"https://{domain}",
            username=username,
            item_title=item_title,
        )
        logger.debug(f"Started login attempt {attempt_id} for {domain}")
        return attempt_id

    def log_step(
        self,
        action: Union[StepAction, str],
        result: Union[StepResult, str],
        params: Optional[Dict[str, Any]] = None,
        details: Optional[str] = None,
    ) -> bool:
        if self._current is None:
            logger.warning("No active login attempt to log step to")
            return False
        self._current.steps.append(Step(
            action=StepAction(action),
            result=StepResult(result),
            params=sanitize_params(params) if params else {},
            details=details,
        ))
        return True

    def set_user_info(self, username: Optional[str] = None, item_title: Optional[str] = None) -> bool:
        if self._current is None:
            logger.warning("No active login attempt to update")
            return False
        if username:
            self._current.username = username
        if item_title:
            self._current.item_title = item_title
        return True

    def complete_attempt(
        self,
        outcome: Union[Outcome, str],
        final_state: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Attempt]:
        """Seal the active attempt, derive its patterns and append it to history.

        Returns:
            The sealed Attempt, or None if no attempt was active
        """
        outcome = Outcome(outcome)
        if outcome == Outcome.IN_PROGRESS:
            raise ValueError("Cannot complete an attempt as in_progress")
        attempt = self._current
        if attempt is None:
            logger.warning("No active login attempt to complete")
            return None

        attempt.completed_at = max(utcnow(), attempt.started_at)
        attempt.outcome = outcome
        attempt.final_state = final_state
        attempt.error_message = error_message
        attempt.flow_type = derive_flow_type(attempt.steps)
        attempt.step_count = len(attempt.steps)
        attempt.two_factor_source, attempt.two_factor_sender = derive_two_factor(attempt.steps)

        self._current = None
        self.store.append(attempt)
        logger.info(f"Login attempt for {attempt.domain} finished: {outcome.value}")

        if self.on_complete is not None:
            self.on_complete(attempt)
        return attempt

    # ---- History queries ----
    @property
    def history(self) -> History:
        return self.store.history

    def attempts_for_domain(self, domain: str) -> List[Attempt]:
        return [a for a in self.store.attempts if a.domain == domain]

    def successful_attempts(self, domain: str) -> List[Attempt]:
        return [a for a in self.attempts_for_domain(domain) if a.outcome == Outcome.SUCCESS]

    def recent(self, limit: int = 10, domain: Optional[str] = None) -> List[Attempt]:
        """Most recent completed attempts, newest first."""
        attempts = self.attempts_for_domain(domain) if domain else list(self.store.attempts)
        return list(reversed(attempts))[:limit]

    def clear_history(self) -> bool:
        return self.store.clear()
