"""Jet energy resolution smearing.

The smearing factor of a jet is drawn from ``Gaus(1, sqrt(s^2 - 1) * sigma/pt)``
where ``s`` is the eta-binned data/simulation resolution ratio and ``sigma`` the
eta-binned parametric simulated resolution.  Each jet gets its own generator
seeded with ``seed * (k + 1)`` (``k`` = the jet's position in its event), so a
jet's smeared pt only depends on the seed, its position and its kinematics.
"""

import logging

import awkward as ak
import numpy as np

from sscoffea.analysis_config import CUTS, JER_RESOLUTION_BINS, JER_SCALE_BINS

logger = logging.getLogger(__name__)


def _eta_bin(abs_eta, edges):
    # index of the first edge strictly above |eta|
    return np.searchsorted(np.asarray(edges), abs_eta, side="right")


def jer_sigma_pt(pt, eta):
    """Absolute simulated pt resolution (GeV) from the parametric form."""
    pt = np.asarray(pt, dtype=np.float64)
    abs_eta = np.abs(np.asarray(eta, dtype=np.float64))
    table = np.asarray([row[1:] for row in JER_RESOLUTION_BINS] + [(0.0, 0.0, 0.0, 0.0)])
    idx = _eta_bin(abs_eta, [row[0] for row in JER_RESOLUTION_BINS])
    n, s, c, m = (table[idx, i] for i in range(4))
    sigma2 = n * np.abs(n) + s * s * np.power(pt, m + 1.0) + c * c * pt * pt
    return np.sqrt(np.clip(sigma2, 0.0, None))


def jer_scale(eta):
    """Data/simulation resolution ratio."""
    abs_eta = np.abs(np.asarray(eta, dtype=np.float64))
    edges = [row[0] for row in JER_SCALE_BINS]
    scales = np.asarray([row[1] for row in JER_SCALE_BINS])
    idx = np.minimum(_eta_bin(abs_eta, edges), len(scales) - 1)
    return scales[idx]


def _standard_normals(seeds):
    """One N(0, 1) draw per seed, each from a generator seeded with that value."""
    unique, inverse = np.unique(seeds, return_inverse=True)
    draws = np.array([np.random.default_rng(int(s)).standard_normal() for s in unique], dtype=np.float64)
    return draws[inverse]


def smear_factors(jets, seed):
    """Per-jet multiplicative smearing factors.

    ``seed`` is a non-negative integer, or one integer per event.
    """
    counts = ak.num(jets.pt)
    position = ak.local_index(jets.pt)
    if isinstance(seed, (int, np.integer)):
        if seed < 0:
            raise ValueError("JER smearing seed must be non-negative.")
        seeds = (position + 1) * int(seed)
    else:
        seed = ak.values_astype(ak.Array(seed), np.int64)
        if ak.any(seed < 0):
            raise ValueError("JER smearing seeds must be non-negative.")
        seeds = ak.broadcast_arrays(seed, position)[0] * (position + 1)

    flat_pt = np.asarray(ak.flatten(jets.pt), dtype=np.float64)
    flat_eta = np.asarray(ak.flatten(jets.eta), dtype=np.float64)
    flat_seeds = np.asarray(ak.flatten(seeds), dtype=np.int64)

    scale = jer_scale(flat_eta)
    with np.errstate(divide="ignore", invalid="ignore"):
        rel_sigma = np.where(flat_pt > 0, jer_sigma_pt(flat_pt, flat_eta) / flat_pt, 0.0)
    width = np.sqrt(np.clip(scale * scale - 1.0, 0.0, None)) * rel_sigma
    factors = 1.0 + width * _standard_normals(flat_seeds)
    return ak.unflatten(factors, counts)


def _scaled(jets, factors):
    # other jet fields (b-tag flags, indices) ride along
    scaled = ak.with_field(jets, jets.pt * factors, "pt")
    return ak.with_field(scaled, jets.mass * factors, "mass")


def _keep(p4, min_pt, max_eta):
    keep = p4.pt >= min_pt
    if max_eta is not None:
        keep = keep & (np.abs(p4.eta) <= max_eta)
    return keep


def smear_jets(jets, seed, min_pt=CUTS["jer_jet_pt_min"]):
    """Smear ``jets`` and drop those that end up below ``min_pt``."""
    smeared = _scaled(jets, smear_factors(jets, seed))
    return smeared[_keep(smeared, min_pt, None)]


def smear_jets_met_ht(jets, met, met_phi, seed, *, min_pt=CUTS["jer_jet_pt_min"], max_eta=None):
    """Smear jets and propagate the change into MET and HT.

    Every jet's momentum change enters the MET; only jets that still pass
    ``min_pt`` (and ``max_eta`` when given) are returned and summed into HT.

    Returns ``(jets, met, met_phi, ht)``.
    """
    factors = smear_factors(jets, seed)
    smeared = _scaled(jets, factors)

    # MET absorbs (old - new) of every jet
    dpx = ak.sum(jets.pt * (1.0 - factors) * np.cos(jets.phi), axis=1)
    dpy = ak.sum(jets.pt * (1.0 - factors) * np.sin(jets.phi), axis=1)
    met_x = met * np.cos(met_phi) + dpx
    met_y = met * np.sin(met_phi) + dpy

    kept = smeared[_keep(smeared, min_pt, max_eta)]
    ht = ak.sum(kept.pt, axis=1)
    return kept, np.hypot(met_x, met_y), np.arctan2(met_y, met_x), ht
