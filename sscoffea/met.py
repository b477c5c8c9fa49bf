"""Missing transverse energy corrections and variants."""

import logging

import awkward as ak
import numpy as np

from sscoffea.analysis_config import CUTS
from sscoffea.corrections import SystematicDirection

logger = logging.getLogger(__name__)


def _sum_xy(p4):
    """Per-event vector sum (x, y) of a jagged momentum collection."""
    if p4 is None:
        return 0.0, 0.0
    return (
        ak.sum(p4.pt * np.cos(p4.phi), axis=1),
        ak.sum(p4.pt * np.sin(p4.phi), axis=1),
    )


def scale_unclustered_met(met, met_phi, jets, leptons, direction, fraction=CUTS["unclustered_met_fraction"]):
    """MET magnitude after scaling the unclustered recoil by ``1 + direction*fraction``.

    The unclustered recoil is MET plus the vector sums of the selected jets and
    leptons; after scaling, jets and leptons are subtracted again.
    ``leptons`` may be a single collection or a list of collections.
    """
    direction = SystematicDirection.coerce(direction)
    jx, jy = _sum_xy(jets)
    if isinstance(leptons, (list, tuple)):
        lx, ly = 0.0, 0.0
        for collection in leptons:
            cx, cy = _sum_xy(collection)
            lx, ly = lx + cx, ly + cy
    else:
        lx, ly = _sum_xy(leptons)

    ux = met * np.cos(met_phi) + jx + lx
    uy = met * np.sin(met_phi) + jy + ly
    scale = 1.0 + int(direction) * fraction
    new_x = ux * scale - jx - lx
    new_y = uy * scale - jy - ly
    return np.hypot(new_x, new_y)


def projected_met(met, met_phi, leptons):
    """MET projected transverse to the nearest lepton when closer than pi/2 in phi.

    Events without leptons keep the full MET.
    """
    dphi = np.abs((leptons.phi - met_phi + np.pi) % (2 * np.pi) - np.pi)
    nearest = ak.fill_none(ak.min(dphi, axis=1), np.pi)
    return ak.where(nearest < np.pi / 2, met * np.sin(nearest), met)


def type1_met(met, met_phi, raw_jets, factors, *, min_pt=CUTS["type1_jet_pt_min"]):
    """Propagate jet energy corrections into MET.

    Jets whose corrected pt exceeds ``min_pt`` contribute ``-(factor - 1) * raw``.
    Returns ``(met, met_phi)``.
    """
    corrected_pt = raw_jets.pt * factors
    use = corrected_pt > min_pt
    shift = ak.where(use, raw_jets.pt * (factors - 1.0), 0.0)
    met_x = met * np.cos(met_phi) - ak.sum(shift * np.cos(raw_jets.phi), axis=1)
    met_y = met * np.sin(met_phi) - ak.sum(shift * np.sin(raw_jets.phi), axis=1)
    return np.hypot(met_x, met_y), np.arctan2(met_y, met_x)
