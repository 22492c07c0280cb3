"""
Engine configuration.

Every entry point takes an optional EngineConfig; None means defaults.
Environment overrides use the MACROLENS_ prefix, e.g.
MACROLENS_MAX_EXPANSION_DEPTH=50.
"""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field

from macrocore.models import AttributionPolicy, ExpansionMode

logger = logging.getLogger(__name__)

_ENV_PREFIX = "MACROLENS_"
_TRUTHY = {"1", "true", "yes", "on"}


class EngineConfig(BaseModel):
    max_expansion_depth: int = Field(30, ge=1)
    max_expansion_nodes: int = Field(5000, ge=1)
    max_suggestions: int = Field(3, ge=0)
    max_suggestion_distance: int = Field(2, ge=0)
    min_partial_match_length: int = Field(4, ge=1)
    # Candidates at or below this similarity are never suggested
    min_suggestion_similarity: float = Field(0.34, ge=0.0, lt=1.0)
    # Only ALL_CAPS identifiers are candidates for undefined-macro reports
    macro_like_only: bool = True
    collect_declarations: bool = True
    report_redefinitions: bool = False
    strip_extra_parentheses: bool = False
    attribution: AttributionPolicy = AttributionPolicy.DEFINITION
    expansion_mode: ExpansionMode = ExpansionMode.SINGLE_LAYER

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "EngineConfig":
        """Build a config from MACROLENS_* variables, defaults elsewhere."""
        environ = os.environ if environ is None else environ
        values = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(_ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if field.annotation is bool:
                values[name] = raw.strip().lower() in _TRUTHY
            else:
                values[name] = raw.strip()
        if values:
            logger.debug("Config overrides from environment: %s", values)
        return cls(**values)


DEFAULT_CONFIG = EngineConfig()


def resolve(config: Optional[EngineConfig]) -> EngineConfig:
    return DEFAULT_CONFIG if config is None else config
