"""Fake-rate lookups and MC origin categories for fakeable leptons.

Fake-rate maps are 2D histograms binned in (|eta|, pt).  Transverse momenta
above the last pt edge use the last bin; |eta| outside the axis and pt below
the first edge give a zero probability, as ROOT's under/overflow bins do.
"""

import logging
import os
from enum import Enum

import awkward as ak
import numpy as np
from coffea.lookup_tools.dense_lookup import dense_lookup

from sscoffea.analysis_config import FAKE_RATE_HISTOGRAMS, FAKE_RATE_PT_EPSILON

logger = logging.getLogger(__name__)


class FakeRateVersion(Enum):
    MU_V1 = "mu_v1"
    EL_V1 = "el_v1"
    EL_V2 = "el_v2"
    EL_V3 = "el_v3"

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown fake-rate version {value!r}; expected one of {[v.value for v in cls]}."
            ) from None

    @property
    def histograms(self):
        """(probability, error) histogram names."""
        return FAKE_RATE_HISTOGRAMS[self.value]

    @property
    def is_muon(self):
        return self is FakeRateVersion.MU_V1


class FakeRateTable:
    """Fake probability and its error as a function of (pt, eta)."""

    def __init__(self, values, errors, eta_edges, pt_edges, name="fake rate"):
        values = np.asarray(values, dtype=np.float64)
        errors = np.asarray(errors, dtype=np.float64)
        self.eta_edges = np.asarray(eta_edges, dtype=np.float64)
        self.pt_edges = np.asarray(pt_edges, dtype=np.float64)
        shape = (len(self.eta_edges) - 1, len(self.pt_edges) - 1)
        if values.shape != shape or errors.shape != shape:
            raise ValueError(
                f"Fake-rate maps must have shape {shape} (|eta| x pt), "
                f"got {values.shape} and {errors.shape}."
            )
        self.name = name
        self._prob = dense_lookup(values, (self.eta_edges, self.pt_edges))
        self._err = dense_lookup(errors, (self.eta_edges, self.pt_edges))

    @classmethod
    def from_root(cls, path, version):
        """Read the probability and error maps of ``version`` from a ROOT file."""
        import uproot

        version = FakeRateVersion.coerce(version)
        if not os.path.exists(path):
            raise FileNotFoundError(f"Fake-rate file '{path}' does not exist.")
        prob_name, err_name = version.histograms
        with uproot.open(path) as fin:
            values, eta_edges, pt_edges = fin[prob_name].to_numpy()
            errors, _, _ = fin[err_name].to_numpy()
        logger.info("Loaded %s fake rates from %s", version.value, path)
        return cls(values, errors, eta_edges, pt_edges, name=version.value)

    @property
    def upper_pt(self):
        return self.pt_edges[-1] - FAKE_RATE_PT_EPSILON

    def lookup(self, pt, eta):
        """Return ``(prob, err)`` with the same (possibly jagged) structure as ``pt``."""
        if isinstance(pt, ak.Array) and pt.ndim > 1:
            counts = ak.num(pt)
            prob, err = self._lookup_flat(
                np.asarray(ak.flatten(pt), dtype=np.float64),
                np.asarray(ak.flatten(eta), dtype=np.float64),
            )
            return ak.unflatten(prob, counts), ak.unflatten(err, counts)
        return self._lookup_flat(
            np.asarray(pt, dtype=np.float64), np.asarray(eta, dtype=np.float64)
        )

    def _lookup_flat(self, pt, eta):
        abs_eta = np.abs(eta)
        pt = np.minimum(pt, self.upper_pt)
        inside = (
            (abs_eta >= self.eta_edges[0])
            & (abs_eta < self.eta_edges[-1])
            & (pt >= self.pt_edges[0])
        )
        prob = np.where(inside, self._prob(abs_eta, pt), 0.0)
        err = np.where(inside, self._err(abs_eta, pt), 0.0)

        bad = (prob > 1.0) | (prob < 0.0)
        if np.any(bad):
            logger.warning(
                "%s: %d fake probabilities outside [0, 1] (e.g. %g)",
                self.name, int(np.count_nonzero(bad)), float(prob[bad].ravel()[0]),
            )
        zero = prob == 0.0
        if np.any(zero):
            logger.warning(
                "%s: zero fake probability for %d object(s), e.g. pt=%g eta=%g",
                self.name, int(np.count_nonzero(zero)),
                float(np.broadcast_to(pt, zero.shape)[zero].ravel()[0]),
                float(np.broadcast_to(eta, zero.shape)[zero].ravel()[0]),
            )
        return prob, err


# ---------------------------------------------------------------------------
# MC origin categories
# ---------------------------------------------------------------------------
#
# 1: conversions (electrons) / punch-through (muons)
# 2: light hadrons
# 3: heavy-flavour hadrons
# 4: anything else

def _between(x, low, high):
    return (x > low) & (x < high)


def _within(x, low, high):
    return (x >= low) & (x <= high)


def _heavy_mother(mother):
    return _within(mother, 400, 600) | _within(mother, 4000, 6000)


def electron_fake_category(mc_id, mother_id):
    """MC origin category of electrons from their matched particle and its mother."""
    mc_id = np.abs(mc_id)
    mother = np.abs(mother_id)
    is_ele = mc_id == 11

    conversion = (
        (is_ele & ((mother == 22) | (mother == 111)))
        | (mc_id == 22)
        | _between(mc_id, 100, 200)
    )
    light = (
        _between(mc_id, 200, 400)
        | _between(mc_id, 2000, 4000)
        | (is_ele & (_between(mother, 200, 400) | _between(mother, 2000, 4000)))
    )
    heavy = is_ele & _heavy_mother(mother)
    return ak.where(conversion, 1, ak.where(light, 2, ak.where(heavy, 3, 4)))


def muon_fake_category(mc_id, mother_id):
    """MC origin category of muons from their matched particle and its mother."""
    is_mu = np.abs(mc_id) == 13
    mother = np.abs(mother_id)
    return ak.where(
        ~is_mu, 1,
        ak.where(mother < 400, 2, ak.where(_heavy_mother(mother), 3, 4)),
    )
