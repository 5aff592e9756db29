"""LoginPilot: records collaborator results as attempt steps and learns from them."""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from urllib.parse import urlparse

from .automation import AutomationExecutor, ClickResult, CommandResult, FillResult
from .core.config import Settings
from .core.models import Attempt, FlowType, Outcome, StepAction, StepResult, TwoFactorSource
from .integrations import IntegrationError, TwoFactorCode, TwoFactorReader, VaultClient, VaultItem
from .learning.engine import RuleEngine
from .learning.session import TWO_FACTOR_SOURCE_MAP, SessionTracker
from .learning.stats import domain_report, overall_report, rule_summary
from .rules.store import RuleStore

logger = logging.getLogger(__name__)

TWO_FACTOR_ACTIONS = (StepAction.FILL_TOTP, StepAction.GET_2FA_CODE)
READER_SOURCES = {source: name for name, source in TWO_FACTOR_SOURCE_MAP.items()}

FILL_RETRIES = 3
NEXT_FALLBACKS = ("Continue", "Submit")
CONFIRM_BUTTONS = ("Verify", "Next", "Submit")


class LoginFlowError(Exception):
    """Raised when a rule-driven login cannot continue."""
    pass


def _fill_step_result(result: FillResult) -> StepResult:
    if not result.success:
        return StepResult.FAILED
    if len(result.filled_fields) > 1:
        return StepResult.SUCCESS
    return StepResult.PARTIAL


def domain_from_url(url: Optional[str]) -> Optional[str]:
    """Host of a vault item URL without a leading ``www.``; None if there is none."""
    if not url:
        return None
    if "://" not in url:
        url = f"https://{url}"
    host = urlparse(url).hostname
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


class LoginPilot:
    """Owns one tracker, rule store and engine, and feeds completed attempts to the engine."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        tracker: Optional[SessionTracker] = None,
        store: Optional[RuleStore] = None,
        engine: Optional[RuleEngine] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.store = store or RuleStore.from_settings(self.settings)
        self.engine = engine or RuleEngine(self.store, max_notes=self.settings.max_learning_notes)
        self.tracker = tracker or SessionTracker.from_settings(self.settings)
        self.tracker.on_complete = self._on_attempt_complete
        self.sleep = sleep or time.sleep

    def _on_attempt_complete(self, attempt: Attempt) -> None:
        rule = self.engine.learn_from_attempt(attempt)
        if rule is not None:
            logger.debug(f"Rule for {rule.domain} now at confidence {rule.confidence:.2f}")

    # ---- Sessions ----
    def start_login_session(
        self,
        domain: str,
        login_url: Optional[str] = None,
        username: Optional[str] = None,
        item_title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start tracking a login and return what is already known about the domain."""
        attempt_id = self.tracker.start_attempt(domain, login_url, username=username, item_title=item_title)
        return {
            "attemptId": attempt_id,
            "domain": domain,
            "rule": rule_summary(self.store.get_rule_for_domain(domain)),
            "buttonCandidates": self.engine.button_candidates(domain),
        }

    def _ensure_session(self, item: VaultItem) -> bool:
        domain = domain_from_url(item.url)
        current = self.tracker.current_attempt
        if current is not None and domain and current.domain != domain:
            # start_attempt seals the stale attempt for the other domain
            current = None
        if current is None:
            if not domain:
                return False
            self.tracker.start_attempt(domain, item.url, username=item.username, item_title=item.title)
            logger.info(f"Started tracking login session for {domain}")
        self.tracker.set_user_info(item.username, item.title)
        return True

    def report_outcome(
        self,
        outcome: Union[Outcome, str],
        final_state: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Attempt]:
        return self.tracker.complete_attempt(outcome, final_state=final_state, error_message=error_message)

    # ---- Collaborator actions ----
    def fill_credentials(self, item_id: str, executor: AutomationExecutor, vault: VaultClient) -> FillResult:
        """Fill the item's credentials through the executor and log the step.

        The password goes from the vault straight to the executor; only the
        item id, username and the names of the filled fields are recorded.
        """
        try:
            item = vault.get_item(item_id)
            credentials = vault.get_credentials(item_id)
        except IntegrationError as e:
            logger.error(f"Could not retrieve credentials for item {item_id}: {e}")
            return FillResult(success=False, error=str(e))

        result = executor.fill_credentials(credentials.username, credentials.password)
        if result.success:
            logger.info(f"Filled: {', '.join(result.filled_fields) or 'fields'}")
        else:
            logger.warning(f"Credential fill failed: {result.error or 'Fill failed'}")

        if self._ensure_session(item):
            self.tracker.log_step(
                StepAction.FILL_CREDENTIALS,
                _fill_step_result(result),
                {"item_id": item_id, "username": item.username},
                f"Filled: {', '.join(result.filled_fields) or 'none'}",
            )
        return result

    def click_button(
        self,
        text: str,
        executor: AutomationExecutor,
        exclude_texts: Optional[List[str]] = None,
    ) -> ClickResult:
        result = executor.click_button(text, exclude_texts=exclude_texts)
        attempt = self.tracker.current_attempt
        if attempt is None:
            return result

        self.tracker.log_step(
            StepAction.CLICK_BUTTON,
            StepResult.SUCCESS if result.success else StepResult.FAILED,
            {"buttonText": text, "excludeTexts": exclude_texts},
            result.clicked or result.error,
        )
        # Only a click after 2FA is taken as the end of the login; before
        # that a 2FA prompt may still follow.
        if result.success and any(s.action in TWO_FACTOR_ACTIONS for s in attempt.steps):
            self.tracker.complete_attempt(Outcome.SUCCESS, final_state="Completed after 2FA verification")
        return result

    def get_2fa_code(self, reader: TwoFactorReader, sender: Optional[str] = None) -> Optional[TwoFactorCode]:
        code = reader.find_code(sender=sender)
        self.tracker.log_step(
            StepAction.GET_2FA_CODE,
            StepResult.SUCCESS if code else StepResult.FAILED,
            {"source": reader.source, "sender": sender},
            code.sender if code else None,
        )
        if code is None:
            logger.warning(f"No 2FA code found via {reader.source}")
        return code

    def fill_totp(self, item_id: str, executor: AutomationExecutor, vault: VaultClient) -> CommandResult:
        try:
            code = vault.get_totp(item_id)
        except IntegrationError as e:
            logger.error(f"Could not retrieve TOTP for item {item_id}: {e}")
            self.tracker.log_step(StepAction.FILL_TOTP, StepResult.FAILED, {"item_id": item_id}, str(e))
            return CommandResult(success=False, error=str(e))

        result = executor.fill_totp(code)
        self.tracker.log_step(
            StepAction.FILL_TOTP,
            StepResult.SUCCESS if result.success else StepResult.FAILED,
            {"item_id": item_id},
            result.error,
        )
        return result

    # ---- Rule-driven login ----
    def smart_login(
        self,
        domain: str,
        item_id: str,
        executor: AutomationExecutor,
        vault: VaultClient,
        readers: Optional[Sequence[TwoFactorReader]] = None,
        login_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run a whole login for ``domain`` from its learned rule, then learn from it.

        The rule decides the flow type, the buttons tried first, the 2FA
        source and sender; general rules supply wait times and the social
        login buttons to avoid. Without a rule, a code is looked for only
        when a reader is offered.

        Returns:
            A summary with ``success``, ``attemptId``, the per-step ``steps``
            log and, when no 2FA code was found, ``pending2fa``.
        """
        logger.info(f"Starting smart login for {domain}")
        try:
            credentials = vault.get_credentials(item_id)
            item = vault.get_item(item_id)
        except IntegrationError as e:
            logger.error(f"Could not retrieve credentials for item {item_id}: {e}")
            return {"success": False, "domain": domain, "error": f"Could not retrieve credentials: {e}"}

        rule = self.store.get_rule_for_domain(domain)
        general = self.store.general_rules
        exclude = list(general.social_login_keywords) if general.avoid_social_login else None
        target_url = login_url or (rule.login_url if rule else None) or f"https://{domain}/login"
        attempt_id = self.tracker.start_attempt(
            domain, target_url, username=item.username or credentials.username, item_title=item.title,
        )
        results: List[str] = []
        summary: Dict[str, Any] = {
            "domain": domain,
            "attemptId": attempt_id,
            "steps": results,
            "ruleUsed": rule_summary(rule),
        }

        try:
            fill = self._fill_with_retries(executor, credentials.username, credentials.password, item_id)
            results.append(f"Fill 1: {', '.join(fill.filled_fields) or 'none'}")
            if not fill.success and not fill.filled_fields:
                raise LoginFlowError("Could not fill any credentials. Login form not found.")

            rule_steps = rule.steps if rule else []
            multi_step = fill.filled_fields == ["username"]
            if rule is not None and rule.flow_type == FlowType.MULTI_STEP:
                multi_step = True
            if multi_step:
                next_button = next((s.button_text for s in rule_steps if s.button_text), "Next")
                clicked = self._click_first(executor, [next_button, *NEXT_FALLBACKS], exclude)
                results.append(f"Next click: {clicked or 'no button found'}")
                self._wait(general.wait_between_steps)

                second = executor.fill_credentials(credentials.username, credentials.password)
                self.tracker.log_step(
                    StepAction.FILL_CREDENTIALS,
                    _fill_step_result(second),
                    {"item_id": item_id},
                    f"Filled: {', '.join(second.filled_fields) or 'none'}",
                )
                results.append(f"Fill 2: {', '.join(second.filled_fields) or 'none'}")

            login_texts = self.engine.button_candidates(domain)
            log_button = next(
                (s.button_text for s in rule_steps if s.button_text and "log" in s.button_text.lower()),
                None if rule else "Log in",
            )
            if log_button:
                login_texts.insert(0, log_button)
            clicked = self._click_first(executor, login_texts, exclude)
            if clicked is None:
                raise LoginFlowError("Could not find a login button")
            results.append(f"Login click: {clicked}")
            self._wait(general.wait_after_submit)

            if rule is not None and rule.two_factor_source is not None:
                source = rule.two_factor_source
            else:
                # No rule yet: expect a code from the first reader offered
                source = next(
                    (TWO_FACTOR_SOURCE_MAP[r.source] for r in readers or [] if r.source in TWO_FACTOR_SOURCE_MAP),
                    TwoFactorSource.NONE,
                )
            if source != TwoFactorSource.NONE:
                code = self._find_2fa_code(source, rule.two_factor_sender if rule else None, item_id, vault, readers)
                if code is None:
                    results.append("No 2FA code found - login pending 2FA verification")
                    self.tracker.complete_attempt(
                        Outcome.PENDING_2FA,
                        final_state="Waiting for 2FA code",
                        error_message="2FA required but no code found automatically",
                    )
                    summary.update(success=False, pending2fa=True)
                    return summary

                filled = executor.fill_totp(code)
                self.tracker.log_step(
                    StepAction.FILL_TOTP,
                    StepResult.SUCCESS if filled.success else StepResult.FAILED,
                    {},
                    filled.error,
                )
                if not filled.success:
                    raise LoginFlowError(f"Could not fill 2FA code: {filled.error or 'unknown error'}")
                confirmed = self._click_first(executor, list(CONFIRM_BUTTONS), None)
                results.append(f"2FA confirm: {confirmed or 'no button found'}")
                self._wait(general.wait_after_submit)
        except (LoginFlowError, IntegrationError) as e:
            logger.error(f"Smart login for {domain} failed: {e}")
            results.append(f"Error: {e}")
            self.tracker.complete_attempt(Outcome.FAILED, error_message=str(e))
            summary.update(success=False, error=str(e))
            return summary

        self.tracker.complete_attempt(Outcome.SUCCESS, final_state="Login flow completed")
        logger.info(f"Smart login for {domain} completed")
        summary["success"] = True
        return summary

    def _wait(self, milliseconds: int) -> None:
        self.sleep(milliseconds / 1000)
        self.tracker.log_step(StepAction.WAIT, StepResult.SUCCESS, {"duration": milliseconds / 1000})

    def _fill_with_retries(
        self,
        executor: AutomationExecutor,
        username: str,
        password: str,
        item_id: str,
    ) -> FillResult:
        """Fill credentials, retrying with a growing pause while no field is found."""
        result = executor.fill_credentials(username, password)
        retries = 0
        while not result.success and not result.filled_fields and retries < FILL_RETRIES:
            retries += 1
            logger.debug(f"Fill failed, retrying ({retries}/{FILL_RETRIES})")
            self.sleep(retries)
            result = executor.fill_credentials(username, password)

        details = f"Filled: {', '.join(result.filled_fields) or 'none'}"
        if retries:
            details += f" (after {retries} retries)"
        self.tracker.log_step(
            StepAction.FILL_CREDENTIALS,
            _fill_step_result(result),
            {"item_id": item_id, "retries": retries},
            details,
        )
        return result

    def _click_first(
        self,
        executor: AutomationExecutor,
        texts: Sequence[str],
        exclude_texts: Optional[List[str]],
    ) -> Optional[str]:
        """Click the first of ``texts`` that matches a button, logging every try."""
        tried = set()
        for text in texts:
            key = text.strip().lower()
            if not key or key in tried:
                continue
            tried.add(key)
            result = executor.click_button(text, exclude_texts=exclude_texts)
            self.tracker.log_step(
                StepAction.CLICK_BUTTON,
                StepResult.SUCCESS if result.success else StepResult.FAILED,
                {"buttonText": text, "excludeTexts": exclude_texts},
                result.clicked or result.error,
            )
            if result.success:
                return result.clicked or text
        return None

    def _find_2fa_code(
        self,
        source: TwoFactorSource,
        sender: Optional[str],
        item_id: str,
        vault: VaultClient,
        readers: Optional[Sequence[TwoFactorReader]],
    ) -> Optional[str]:
        if source == TwoFactorSource.TOTP:
            try:
                code = vault.get_totp(item_id)
            except IntegrationError as e:
                logger.warning(f"Could not get TOTP for item {item_id}: {e}")
                code = None
            self.tracker.log_step(
                StepAction.GET_2FA_CODE,
                StepResult.SUCCESS if code else StepResult.FAILED,
                {"source": "totp"},
                None if code else "No code found",
            )
            return code or None

        reader = next((r for r in readers or [] if TWO_FACTOR_SOURCE_MAP.get(r.source) == source), None)
        if reader is None:
            logger.warning(f"No reader for {source.value} 2FA codes")
            self.tracker.log_step(
                StepAction.GET_2FA_CODE,
                StepResult.FAILED,
                {"source": READER_SOURCES[source], "sender": sender},
                "No code found",
            )
            return None
        found = self.get_2fa_code(reader, sender=sender)
        return found.code if found else None

    # ---- Reports ----
    def stats(self, domain: Optional[str] = None) -> Dict[str, Any]:
        if domain:
            return domain_report(self.tracker, self.store, domain)
        return overall_report(self.tracker, self.engine)
