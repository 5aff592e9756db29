"""Rule storage: provenance layering and persistence of learned site rules."""

from .merge import convert_bundled_rule, merge_layers
from .store import RuleStore, base_domain

__all__ = [
    'RuleStore',
    'base_domain',
    'convert_bundled_rule',
    'merge_layers',
]
