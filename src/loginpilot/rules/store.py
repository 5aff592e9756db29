"""Rule Store: loads layered rules and persists the locally learned ones."""
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..core.config import Settings
from ..core.models import GeneralRules, Provenance, Rule, RuleSet, utcnow
from ..core.storage import StoreError, exclusive_lock, read_json, set_aside, write_json_atomic
from .merge import community_applies, convert_bundled_rule, merge_layers

logger = logging.getLogger(__name__)

RuleMutation = Callable[[Optional[Rule]], Optional[Rule]]


def base_domain(domain: str) -> str:
    """Reduce a host to its last two labels (``login.example.com`` -> ``example.com``)."""
    parts = domain.split(".")
    if len(parts) > 2:
        return ".".join(parts[-2:])
    return domain


def _raw_sites(data: Optional[Dict[str, Any]], label: str) -> Dict[str, Any]:
    sites = (data or {}).get("sites")
    if sites is None:
        return {}
    if not isinstance(sites, dict):
        logger.error(f"Ignoring {label} rules: \"sites\" is not an object")
        return {}
    return sites


def _parse_sites(data: Optional[Dict[str, Any]], label: str) -> Dict[str, Rule]:
    """Parse the ``sites`` mapping; the key is the rule's domain."""
    sites: Dict[str, Rule] = {}
    for domain, raw in _raw_sites(data, label).items():
        try:
            raw = dict(raw)
            raw["domain"] = domain
            sites[domain] = Rule.from_dict(raw)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"Skipping malformed {label} rule for {domain}: {e}")
    return sites


class RuleStore:
    """Per-domain rules merged from bundled, local and community sources.

    Only rules whose provenance is ``local`` are ever written back; bundled
    and community rules are reproducible from their own files.
    """

    def __init__(
        self,
        rules_file: Path,
        bundled_rules_file: Optional[Path] = None,
        community_rules_file: Optional[Path] = None,
    ):
        self.rules_file = Path(rules_file)
        self.bundled_rules_file = Path(bundled_rules_file) if bundled_rules_file else None
        self.community_rules_file = Path(community_rules_file) if community_rules_file else None
        self._dirty: Set[str] = set()
        self._rules = self.load()

    @classmethod
    def from_settings(cls, settings: Settings) -> 'RuleStore':
        return cls(
            settings.rules_file,
            bundled_rules_file=settings.bundled_rules_file,
            community_rules_file=settings.community_rules_file,
        )

    # ---- Loading ----
    def _read(self, path: Optional[Path], label: str) -> Optional[Dict[str, Any]]:
        if path is None:
            return None
        try:
            return read_json(path)
        except StoreError as e:
            logger.error(f"Failed to load {label} rules: {e}")
            return None

    def _load_bundled(self) -> Tuple[Dict[str, Rule], Dict[str, Any]]:
        data = self._read(self.bundled_rules_file, "bundled") or {}
        bundled: Dict[str, Rule] = {}
        for domain, site in _raw_sites(data, "bundled").items():
            try:
                bundled[domain] = convert_bundled_rule(domain, site)
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.error(f"Skipping malformed bundled rule for {domain}: {e}")
        general = data.get("generalRules")
        return bundled, general if isinstance(general, dict) else {}

    def load(self) -> RuleSet:
        bundled, general = self._load_bundled()
        local_data = self._read(self.rules_file, "local")
        if local_data and isinstance(local_data.get("generalRules"), dict):
            general = {**general, **local_data["generalRules"]}
        local = _parse_sites(local_data, "local")
        community = _parse_sites(self._read(self.community_rules_file, "community"), "community")
        rules = merge_layers(bundled, local, community.values(), general_rules=general)
        logger.debug(
            f"Loaded {len(rules.sites)} rules "
            f"({len(bundled)} bundled, {len(local)} local, {len(community)} community)"
        )
        return rules

    def reload(self) -> None:
        self._dirty.clear()
        self._rules = self.load()

    # ---- Lookup ----
    @property
    def rules(self) -> RuleSet:
        return self._rules

    @property
    def general_rules(self) -> GeneralRules:
        return self._rules.general_rules

    def all_rules(self) -> List[Rule]:
        return list(self._rules.sites.values())

    def get_rule_for_domain(self, domain: str) -> Optional[Rule]:
        """Exact match first, then the parent domain's rule."""
        rule = self._rules.sites.get(domain)
        if rule is not None:
            return rule
        parent = base_domain(domain)
        if parent != domain:
            return self._rules.sites.get(parent)
        return None

    # ---- Mutation ----
    def put_rule(self, rule: Rule) -> None:
        self._rules.sites[rule.domain] = rule
        self.mark_dirty(rule)

    def mark_dirty(self, rule: Rule) -> None:
        self._dirty.add(rule.domain)

    def update(self, domain: str, mutate: RuleMutation) -> Optional[Rule]:
        """Apply ``mutate`` to the latest rule for ``domain`` and persist it.

        The local rules lock is held from the re-read of the file until the
        write, so a rule changed by another process is mutated from its
        on-disk state rather than from our possibly stale copy. ``mutate``
        receives the rule (or None) and returns the rule it changed, if any.
        """
        try:
            with exclusive_lock(self.rules_file):
                self._refresh_local()
                rule = mutate(self.get_rule_for_domain(domain))
                self._write_dirty()
                return rule
        except StoreError as e:
            logger.error(f"Cannot lock local rules, learning for {domain} is kept in memory only: {e}")
            return mutate(self.get_rule_for_domain(domain))

    def _refresh_local(self) -> None:
        """Adopt local rules written by other processes. Caller holds the lock."""
        local = _parse_sites(self._read(self.rules_file, "local"), "local")
        for domain, rule in local.items():
            if domain in self._dirty:
                continue
            current = self._rules.sites.get(domain)
            if current is not None:
                if current.provenance == Provenance.COMMUNITY and community_applies(rule, current):
                    continue
                if current.provenance == Provenance.LOCAL and rule.last_updated <= current.last_updated:
                    continue
            self._rules.sites[domain] = rule

    def save(self) -> bool:
        """Write changed local rules to the local rules file.

        Local rules changed by another process since our load are kept; our
        own changes win for the domains we touched. Use :meth:`update` to
        change a rule another process may also be changing.

        Returns:
            bool: True if the file was written (or there was nothing to write)
        """
        try:
            with exclusive_lock(self.rules_file):
                return self._write_dirty()
        except StoreError as e:
            logger.error(f"Failed to save local rules: {e}")
            return False

    def _write_dirty(self) -> bool:
        """Merge dirty local rules into the file. Caller holds the lock."""
        dirty = {
            d: r for d, r in self._rules.sites.items()
            if d in self._dirty and r.provenance == Provenance.LOCAL
        }
        if not dirty:
            self._dirty.clear()
            return True
        try:
            try:
                on_disk = read_json(self.rules_file) or {}
            except StoreError as e:
                logger.error(f"Local rules file is unreadable: {e}")
                set_aside(self.rules_file)
                on_disk = {}
            sites = dict(_raw_sites(on_disk, "local"))
            sites.update({d: r.to_dict() for d, r in dirty.items()})
            self._rules.last_updated = utcnow()
            payload = self._rules.to_dict(provenance=Provenance.LOCAL)
            payload["sites"] = sites
            write_json_atomic(self.rules_file, payload)
        except StoreError as e:
            logger.error(f"Failed to save local rules: {e}")
            return False
        self._dirty.clear()
        return True

    def import_community_rules(self, rules: Iterable[Rule]) -> List[str]:
        """Apply community rules and record them in the community rules file.

        Returns:
            Domains whose rule was replaced by the imported one
        """
        incoming = list(rules)
        applied: List[str] = []
        for rule in incoming:
            rule.provenance = Provenance.COMMUNITY
            if community_applies(self._rules.sites.get(rule.domain), rule):
                self._rules.sites[rule.domain] = rule
                applied.append(rule.domain)
            else:
                logger.info(f"Keeping local rule for {rule.domain}; community rule has lower confidence")
        if self.community_rules_file is not None and incoming:
            self._record_community(incoming)
        return applied

    def _record_community(self, rules: List[Rule]) -> None:
        try:
            with exclusive_lock(self.community_rules_file):
                try:
                    on_disk = read_json(self.community_rules_file) or {}
                except StoreError as e:
                    logger.error(f"Community rules file is unreadable: {e}")
                    set_aside(self.community_rules_file)
                    on_disk = {}
                sites = dict(_raw_sites(on_disk, "community"))
                sites.update({r.domain: r.to_dict() for r in rules})
                write_json_atomic(self.community_rules_file, {
                    "version": self._rules.version,
                    "lastUpdated": utcnow().isoformat(),
                    "sites": sites,
                })
        except StoreError as e:
            logger.error(f"Failed to record community rules: {e}")
