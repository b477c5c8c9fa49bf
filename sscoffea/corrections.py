"""Jet energy correction strategies.

Every strategy turns a jagged array of raw jets into one multiplicative factor
per jet.  The jet pipeline multiplies the raw momentum by these factors, so all
strategies produce structurally identical output and differ only in values:

    - ``NoCorrection``: factor 1 (uncorrected and generator-level jets).
    - ``PrecomputedCorrection``: factor stored on the jet record, chosen by the
      data/simulation flag.
    - ``FactorizedCorrection``: a correctionlib correction evaluated on the fly
      from (JetA, JetEta, JetPt, Rho).
    - ``UncertaintyShift``: a nominal strategy followed by ``1 + direction*unc``
      where ``unc`` comes from a correctionlib uncertainty at (JetEta, JetPt).
    - ``CombinedCorrection``: factorized correction followed by the shift.

correctionlib payloads are cached per worker process.
"""

import logging
import os
from enum import IntEnum

import awkward as ak
import numpy as np

from sscoffea.analysis_config import JET_FIELDS, JEC_UNC_ETA_MAX

logger = logging.getLogger(__name__)

# Cache correctionlib payloads per worker process (avoid re-reading JSON every chunk).
_CORRECTIONSET_CACHE = {}


class SystematicDirection(IntEnum):
    """Energy-scale variation applied by an uncertainty-aware strategy."""

    NOMINAL = 0
    UP = 1
    DOWN = -1

    @classmethod
    def coerce(cls, value):
        """Return ``value`` as a direction, raising ``ValueError`` if unknown."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.upper()]
            except KeyError:
                raise ValueError(f"Unknown systematic direction '{value}'.") from None
        if isinstance(value, bool):
            raise ValueError(f"Unknown systematic direction {value!r}; expected one of 0, +1, -1.")
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown systematic direction {value!r}; expected one of 0, +1, -1."
            ) from None


def load_correction_set(path):
    """Load (and cache) a correctionlib CorrectionSet."""
    import correctionlib

    ceval = _CORRECTIONSET_CACHE.get(path)
    if ceval is None:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Correction payload '{path}' does not exist.")
        ceval = correctionlib.CorrectionSet.from_file(path)
        _CORRECTIONSET_CACHE[path] = ceval
        logger.info("Loaded correction payload %s", path)
    return ceval


def get_correction(cset, name):
    """Return a plain or compound correction from ``cset`` by name."""
    if name in list(cset.compound.keys()):
        return cset.compound[name]
    if name in list(cset.keys()):
        return cset[name]
    raise ValueError(f"No correction named '{name}' in correction set.")


def evaluate_named(correction, values):
    """Evaluate ``correction`` with inputs picked from ``values`` by input name."""
    missing = [inp.name for inp in correction.inputs if inp.name not in values]
    if missing:
        raise ValueError(
            f"Correction '{correction.name}' needs inputs {missing} that are not provided."
        )
    return correction.evaluate(*[values[inp.name] for inp in correction.inputs])


def _flat(array):
    return np.asarray(ak.flatten(array), dtype=np.float64)


def _require_field(jets, field):
    if field not in jets.fields:
        raise ValueError(f"Jets carry no '{field}' field; available fields: {jets.fields}")
    return jets[field]


class CorrectionStrategy:
    """Base class: produce one correction factor per raw jet."""

    has_uncertainty = False

    def factors(self, jets, *, rho=None, is_data=False, direction=SystematicDirection.NOMINAL):
        """Return a jagged array of factors aligned with ``jets``."""
        direction = SystematicDirection.coerce(direction)
        if direction != SystematicDirection.NOMINAL and not self.has_uncertainty:
            raise ValueError(
                f"{type(self).__name__} has no uncertainty source; "
                f"cannot apply systematic direction {direction.name}."
            )
        return self._factors(jets, rho=rho, is_data=is_data, direction=direction)

    def _factors(self, jets, *, rho, is_data, direction):
        raise NotImplementedError


class NoCorrection(CorrectionStrategy):
    def _factors(self, jets, *, rho, is_data, direction):
        return ak.ones_like(jets.pt, dtype=np.float64)


class PrecomputedCorrection(CorrectionStrategy):
    """Factor stored per jet: full chain for data, abbreviated chain for simulation."""

    def __init__(self, data_field=JET_FIELDS["corr_data"], mc_field=JET_FIELDS["corr_mc"]):
        self.data_field = data_field
        self.mc_field = mc_field if mc_field is not None else data_field

    def _factors(self, jets, *, rho, is_data, direction):
        field = self.data_field if is_data else self.mc_field
        return ak.values_astype(_require_field(jets, field), np.float64)


class FactorizedCorrection(CorrectionStrategy):
    """On-the-fly correction from a correctionlib (compound) correction."""

    def __init__(self, correction, area_field=JET_FIELDS["area"]):
        self.correction = correction
        self.area_field = area_field

    @classmethod
    def from_file(cls, path, name, **kwargs):
        return cls(get_correction(load_correction_set(path), name), **kwargs)

    def _factors(self, jets, *, rho, is_data, direction):
        if rho is None:
            raise ValueError("FactorizedCorrection needs the event pile-up density (rho).")
        counts = ak.num(jets.pt)
        flat_pt = _flat(jets.pt)
        if len(flat_pt) == 0:
            return ak.unflatten(np.zeros(0, dtype=np.float64), counts)

        rho_per_jet = ak.broadcast_arrays(ak.Array(rho), jets.pt)[0]
        values = {
            "JetA": _flat(_require_field(jets, self.area_field)),
            "JetEta": _flat(jets.eta),
            "JetPt": flat_pt,
            "Rho": _flat(rho_per_jet),
        }
        out = evaluate_named(self.correction, values)
        return ak.unflatten(np.asarray(out, dtype=np.float64), counts)


class UncertaintyShift(CorrectionStrategy):
    """Shift a nominally corrected jet by ``1 + direction * uncertainty``.

    The uncertainty is evaluated at the nominally corrected pt and at the jet
    eta clamped to the evaluator's domain.
    """

    has_uncertainty = True

    def __init__(self, nominal, uncertainty):
        if nominal.has_uncertainty:
            raise ValueError("UncertaintyShift expects a nominal strategy without its own shift.")
        self.nominal = nominal
        self.uncertainty = uncertainty

    def _factors(self, jets, *, rho, is_data, direction):
        nominal = self.nominal.factors(jets, rho=rho, is_data=is_data)
        if direction == SystematicDirection.NOMINAL:
            return nominal

        counts = ak.num(jets.pt)
        flat_pt = _flat(jets.pt * nominal)
        if len(flat_pt) == 0:
            return nominal

        values = {
            "JetEta": np.clip(_flat(jets.eta), -JEC_UNC_ETA_MAX, JEC_UNC_ETA_MAX),
            "JetPt": flat_pt,
        }
        unc = np.asarray(evaluate_named(self.uncertainty, values), dtype=np.float64)
        shift = ak.unflatten(1.0 + int(direction) * unc, counts)
        return nominal * shift


class CombinedCorrection(UncertaintyShift):
    """Factorized correction followed by an uncertainty shift."""

    def __init__(self, correction, uncertainty, area_field=JET_FIELDS["area"]):
        super().__init__(FactorizedCorrection(correction, area_field=area_field), uncertainty)
