import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"
    IN_PROGRESS = "in_progress"
    ALREADY_LOGGED_IN = "already_logged_in"
    PENDING_2FA = "pending_2fa"


class StepAction(str, Enum):
    FILL_CREDENTIALS = "fill_credentials"
    CLICK_BUTTON = "click_button"
    FILL_TOTP = "fill_totp"
    GET_2FA_CODE = "get_2fa_code"
    WAIT = "wait"


class StepResult(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class FlowType(str, Enum):
    SINGLE_PAGE = "single-page"
    MULTI_STEP = "multi-step"


class TwoFactorSource(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    TOTP = "totp"
    NONE = "none"


class RuleAction(str, Enum):
    FILL_USERNAME = "fill_username"
    FILL_PASSWORD = "fill_password"
    FILL_CREDENTIALS = "fill_credentials"
    CLICK_BUTTON = "click_button"
    FILL_2FA = "fill_2fa"
    WAIT = "wait"


class Provenance(str, Enum):
    BUNDLED = "bundled"
    LOCAL = "local"
    COMMUNITY = "community"


class NoteType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ADAPTATION = "adaptation"
    HYPOTHESIS = "hypothesis"


@dataclass
class Step:
    """A single sub-action logged during a login attempt."""
    action: StepAction
    result: StepResult
    params: Dict[str, Any] = field(default_factory=dict)
    details: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def button_text(self) -> Optional[str]:
        value = self.params.get("buttonText")
        return value if isinstance(value, str) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'params': self.params,
            'result': self.result.value,
            'details': self.details,
            'timestamp': _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Step':
        return cls(
            action=StepAction(data['action']),
            result=StepResult(data['result']),
            params=data.get('params') or {},
            details=data.get('details'),
            timestamp=parse_datetime(data.get('timestamp')) or utcnow(),
        )


@dataclass
class Attempt:
    """One login try, with its step log and final outcome."""
    id: str
    domain: str
    login_url: str
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    outcome: Outcome = Outcome.IN_PROGRESS
    steps: List[Step] = field(default_factory=list)
    final_state: Optional[str] = None
    error_message: Optional[str] = None
    username: Optional[str] = None
    item_title: Optional[str] = None
    flow_type: Optional[FlowType] = None
    step_count: Optional[int] = None
    two_factor_source: Optional[TwoFactorSource] = None
    two_factor_sender: Optional[str] = None

    def steps_of(self, action: StepAction) -> List[Step]:
        return [s for s in self.steps if s.action == action]

    @property
    def duration_seconds(self) -> Optional[int]:
        if not self.completed_at:
            return None
        return round((self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        """Convert the attempt to the JSON shape of the history file."""
        return {
            'id': self.id,
            'domain': self.domain,
            'loginUrl': self.login_url,
            'startedAt': _iso(self.started_at),
            'completedAt': _iso(self.completed_at),
            'outcome': self.outcome.value,
            'steps': [s.to_dict() for s in self.steps],
            'finalState': self.final_state,
            'errorMessage': self.error_message,
            'username': self.username,
            'itemTitle': self.item_title,
            'flowType': self.flow_type.value if self.flow_type else None,
            'stepCount': self.step_count,
            'twoFactorSource': self.two_factor_source.value if self.two_factor_source else None,
            'twoFactorSender': self.two_factor_sender,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Attempt':
        return cls(
            id=data['id'],
            domain=data['domain'],
            login_url=data.get('loginUrl') or '',
            started_at=parse_datetime(data.get('startedAt')) or utcnow(),
            completed_at=parse_datetime(data.get('completedAt')),
            outcome=Outcome(data.get('outcome', Outcome.IN_PROGRESS.value)),
            steps=[Step.from_dict(s) for s in data.get('steps', [])],
            final_state=data.get('finalState'),
            error_message=data.get('errorMessage'),
            username=data.get('username'),
            item_title=data.get('itemTitle'),
            flow_type=FlowType(data['flowType']) if data.get('flowType') else None,
            step_count=data.get('stepCount'),
            two_factor_source=TwoFactorSource(data['twoFactorSource']) if data.get('twoFactorSource') else None,
            two_factor_sender=data.get('twoFactorSender'),
        )


@dataclass
class History:
    version: str = "1.0"
    last_updated: datetime = field(default_factory=utcnow)
    attempts: List[Attempt] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'lastUpdated': _iso(self.last_updated),
            'attempts': [a.to_dict() for a in self.attempts],
        }


@dataclass
class StepRule:
    order: int
    action: RuleAction
    button_text: Optional[str] = None
    wait_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'order': self.order, 'action': self.action.value}
        if self.button_text is not None:
            data['buttonText'] = self.button_text
        if self.wait_ms is not None:
            data['waitMs'] = self.wait_ms
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepRule':
        return cls(
            order=int(data.get('order', 0)),
            action=RuleAction(data['action']),
            button_text=data.get('buttonText'),
            wait_ms=data.get('waitMs'),
        )


@dataclass
class LearningNote:
    type: NoteType
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'timestamp': _iso(self.timestamp),
            'type': self.type.value,
            'message': self.message,
        }
        if self.details is not None:
            data['details'] = self.details
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LearningNote':
        return cls(
            type=NoteType(data['type']),
            message=data.get('message', ''),
            timestamp=parse_datetime(data.get('timestamp')) or utcnow(),
            details=data.get('details'),
        )


@dataclass
class Rule:
    """Learned automation recipe for one domain."""
    domain: str
    login_url: str = ""
    name: Optional[str] = None
    flow_type: FlowType = FlowType.SINGLE_PAGE
    steps: List[StepRule] = field(default_factory=list)
    two_factor_source: Optional[TwoFactorSource] = None
    two_factor_sender: Optional[str] = None
    confidence: float = 0.0
    provenance: Provenance = Provenance.LOCAL
    last_updated: datetime = field(default_factory=utcnow)
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    learning_notes: List[LearningNote] = field(default_factory=list)
    last_failure_reason: Optional[str] = None
    adaptations: List[str] = field(default_factory=list)
    alternative_button_texts: List[str] = field(default_factory=list)

    def recompute_confidence(self) -> None:
        total = self.success_count + self.failure_count
        if total:
            self.confidence = self.success_count / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'name': self.name,
            'loginUrl': self.login_url,
            'flowType': self.flow_type.value,
            'steps': [s.to_dict() for s in self.steps],
            'twoFactorSource': self.two_factor_source.value if self.two_factor_source else None,
            'twoFactorSender': self.two_factor_sender,
            'confidence': self.confidence,
            'provenance': self.provenance.value,
            'lastUpdated': _iso(self.last_updated),
            'successCount': self.success_count,
            'failureCount': self.failure_count,
            'consecutiveFailures': self.consecutive_failures,
            'learningNotes': [n.to_dict() for n in self.learning_notes],
            'lastFailureReason': self.last_failure_reason,
            'adaptations': list(self.adaptations),
            'alternativeButtonTexts': list(self.alternative_button_texts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Rule':
        # "learnedFrom" is the older name of the provenance field
        provenance = data.get('provenance') or data.get('learnedFrom') or Provenance.LOCAL.value
        return cls(
            domain=data['domain'],
            login_url=data.get('loginUrl') or '',
            name=data.get('name'),
            flow_type=FlowType(data.get('flowType') or FlowType.SINGLE_PAGE.value),
            steps=[StepRule.from_dict(s) for s in data.get('steps', [])],
            two_factor_source=TwoFactorSource(data['twoFactorSource']) if data.get('twoFactorSource') else None,
            two_factor_sender=data.get('twoFactorSender'),
            confidence=float(data.get('confidence', 0.0)),
            provenance=Provenance(provenance),
            last_updated=parse_datetime(data.get('lastUpdated')) or utcnow(),
            success_count=int(data.get('successCount', 0)),
            failure_count=int(data.get('failureCount', 0)),
            consecutive_failures=int(data.get('consecutiveFailures', 0)),
            learning_notes=[LearningNote.from_dict(n) for n in data.get('learningNotes', [])],
            last_failure_reason=data.get('lastFailureReason'),
            adaptations=list(data.get('adaptations', [])),
            alternative_button_texts=list(data.get('alternativeButtonTexts', [])),
        )


DEFAULT_SOCIAL_LOGIN_KEYWORDS = ["google", "apple", "facebook", "microsoft", "github", "linkedin", "twitter"]
DEFAULT_BUTTON_ORDER = ["next", "continue", "log in", "sign in", "submit"]


@dataclass
class GeneralRules:
    """Cross-domain defaults applied when a site has no specific guidance."""
    avoid_social_login: bool = True
    social_login_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_SOCIAL_LOGIN_KEYWORDS))
    preferred_button_order: List[str] = field(default_factory=lambda: list(DEFAULT_BUTTON_ORDER))
    wait_between_steps: int = 2000
    wait_after_submit: int = 3000

    def to_dict(self) -> Dict[str, Any]:
        return {
            'avoidSocialLogin': self.avoid_social_login,
            'socialLoginKeywords': list(self.social_login_keywords),
            'preferredButtonOrder': list(self.preferred_button_order),
            'waitBetweenSteps': self.wait_between_steps,
            'waitAfterSubmit': self.wait_after_submit,
        }

    def updated(self, data: Optional[Dict[str, Any]]) -> 'GeneralRules':
        """Return a copy with the keys present in ``data`` overridden.

        A value of the wrong type keeps the current setting for that key.
        """
        values = {attr: getattr(self, attr) for attr, _ in _GENERAL_RULE_FIELDS.values()}
        if isinstance(data, dict):
            for key, value in data.items():
                if key not in _GENERAL_RULE_FIELDS:
                    continue
                attr, coerce = _GENERAL_RULE_FIELDS[key]
                try:
                    values[attr] = coerce(value)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Ignoring general rule {key}={value!r}: {e}")
        return GeneralRules(**{k: list(v) if isinstance(v, list) else v for k, v in values.items()})


def _as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError("expected true or false")
    return value


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError("expected a number")
    return int(value)


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise TypeError("expected a list of strings")
    return list(value)


_GENERAL_RULE_FIELDS = {
    'avoidSocialLogin': ('avoid_social_login', _as_bool),
    'socialLoginKeywords': ('social_login_keywords', _as_str_list),
    'preferredButtonOrder': ('preferred_button_order', _as_str_list),
    'waitBetweenSteps': ('wait_between_steps', _as_int),
    'waitAfterSubmit': ('wait_after_submit', _as_int),
}


@dataclass
class RuleSet:
    version: str = "1.0"
    last_updated: datetime = field(default_factory=utcnow)
    general_rules: GeneralRules = field(default_factory=GeneralRules)
    sites: Dict[str, Rule] = field(default_factory=dict)

    def to_dict(self, provenance: Optional[Provenance] = None) -> Dict[str, Any]:
        """Serialize, optionally keeping only rules of one provenance."""
        return {
            'version': self.version,
            'lastUpdated': _iso(self.last_updated),
            'generalRules': self.general_rules.to_dict(),
            'sites': {
                domain: rule.to_dict()
                for domain, rule in self.sites.items()
                if provenance is None or rule.provenance == provenance
            },
        }
