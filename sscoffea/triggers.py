"""Dilepton trigger decisions for the same-sign analysis.

Paths are configured as prefixes in ``TRIGGER_PATHS``; NanoAOD stores
``HLT_<name>`` without version suffix, so a configured ``HLT_X_v`` matches
``HLT.X`` as well as any ``HLT.X_v<N>``.  Paths missing from a file count as
not fired.  Simulation always passes.
"""

import logging
from enum import Enum, IntEnum

import awkward as ak
import numpy as np

from sscoffea.analysis_config import TRIGGER_PATHS
from sscoffea.log_utils import warn_once

logger = logging.getLogger(__name__)


class HypType(IntEnum):
    """Flavour of a dilepton hypothesis (leading lepton first)."""

    MUMU = 0
    EMU = 1
    MUE = 2
    EE = 3

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ValueError(f"Unknown hypothesis type {value!r}; expected 0..3.") from None

    @property
    def channel(self):
        if self is HypType.MUMU:
            return "mm"
        if self is HypType.EE:
            return "ee"
        return "em"


class AnalysisType(Enum):
    HIGH_PT = "high_pt"
    LOW_PT = "low_pt"
    VERY_LOW_PT = "very_low_pt"

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown analysis type {value!r}; expected one of {[a.value for a in cls]}."
            ) from None


def _matching_fields(hlt_fields, prefix):
    base = prefix[len("HLT_"):] if prefix.startswith("HLT_") else prefix
    if base.endswith("_v"):
        base = base[:-2]
    return [f for f in hlt_fields if f == base or f.startswith(base + "_v")]


def channel_trigger(events, channel, analysis_type):
    """OR of the configured paths for one channel ("mm", "em" or "ee")."""
    analysis_type = AnalysisType.coerce(analysis_type)
    n = len(events)
    HLT = getattr(events, "HLT", None)
    hlt_fields = HLT.fields if HLT is not None else []

    fired = ak.Array(np.zeros(n, dtype=bool))
    for prefix in TRIGGER_PATHS[analysis_type.value][channel]:
        names = _matching_fields(hlt_fields, prefix)
        if not names:
            warn_once(
                logger, f"missing_hlt::{prefix}",
                "Trigger path '%s' not found in HLT branches; treated as not fired.", prefix,
            )
            continue
        for name in names:
            fired = fired | HLT[name]
    return fired


def passes_trigger(events, hyp_type, analysis_type, is_data):
    """Per-event trigger decision for the given hypothesis type.

    ``hyp_type`` is a single ``HypType`` or one hypothesis type per event.
    """
    analysis_type = AnalysisType.coerce(analysis_type)
    n = len(events)
    if not is_data:
        return ak.Array(np.ones(n, dtype=bool))

    if isinstance(hyp_type, (int, np.integer, HypType)):
        return channel_trigger(events, HypType.coerce(hyp_type).channel, analysis_type)

    hyp_type = ak.Array(hyp_type)
    if len(hyp_type) != n:
        raise ValueError(f"Got {len(hyp_type)} hypothesis types for {n} events.")
    if ak.any((hyp_type < int(HypType.MUMU)) | (hyp_type > int(HypType.EE))):
        raise ValueError("Hypothesis types must be in 0..3.")
    mm = channel_trigger(events, "mm", analysis_type)
    em = channel_trigger(events, "em", analysis_type)
    ee = channel_trigger(events, "ee", analysis_type)
    return ak.where(
        hyp_type == int(HypType.MUMU), mm, ak.where(hyp_type == int(HypType.EE), ee, em)
    )
