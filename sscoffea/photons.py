"""Photon identification and EM-object selection for MET templates.

Photon records carry their supercluster quantities (see ``PHOTON_FIELDS``);
all functions are columnar and return jagged masks aligned with the photons.
"""

import logging
from enum import IntEnum

import awkward as ak
import numpy as np

from sscoffea.analysis_config import CUTS, JET_FIELDS, PHOTON_FIELDS, VGAMMA_2011_CUTS

logger = logging.getLogger(__name__)


class EMObjectStatus(IntEnum):
    """Outcome of the EM-object selection for one photon."""

    PASSED = 0
    FAILED_KINEMATICS = -1
    NO_JET = -2
    JET_TOO_FAR = -3
    LOW_NEUTRAL_EM = -4


def _field(photons, key):
    name = PHOTON_FIELDS[key]
    if name not in photons.fields:
        raise ValueError(f"Photons carry no '{name}' field; available fields: {photons.fields}")
    return photons[name]


def is_spike(photons):
    """ECAL spike: r4 = (E1x3 + E3x1 - 2 Emax) / Emax below 0.05.

    Photons without a supercluster are never spikes.
    """
    emax = _field(photons, "sc_emax")
    has_sc = (_field(photons, "sc_index") != -1) & (emax > 0)
    safe_emax = ak.where(has_sc, emax, 1.0)
    r4 = (_field(photons, "sc_e1x3") + _field(photons, "sc_e3x1") - 2 * emax) / safe_emax
    return has_sc & (r4 < CUTS["photon_spike_r4_max"])


def hollow_cone_track_iso(photons, tracks):
    """Scalar pt sum of tracks with 0.05 < dR < 0.4 around each photon."""
    pairs = ak.cartesian({"photon": photons, "track": tracks}, axis=1, nested=True)
    dr = pairs.photon.delta_r(pairs.track)
    in_cone = (dr > CUTS["photon_hollow_dr_inner"]) & (dr < CUTS["photon_hollow_dr_outer"])
    return ak.sum(ak.where(in_cone, pairs.track.pt, 0.0), axis=2)


def photon_id_yuri(photons, tracks):
    """Barrel photon ID with ECAL/HCAL isolation and a hollow-cone track isolation."""
    pt = photons.pt
    return (
        (pt >= CUTS["photon_yuri_pt_min"])
        & (np.abs(photons.eta) <= CUTS["photon_yuri_eta_max"])
        & (_field(photons, "ecal_iso03") < 4.2 + 0.004 * pt)
        & (_field(photons, "hcal_iso03") < 2.2 + 0.001 * pt)
        & (_field(photons, "hoe") < CUTS["photon_yuri_hoe_max"])
        & (_field(photons, "sieie") < CUTS["photon_yuri_sieie_max"])
        & (hollow_cone_track_iso(photons, tracks) < 2.0 + 0.001 * pt)
        & ~is_spike(photons)
    )


def _iso_ceiling(coeffs, et, rho):
    const, et_coeff, rho_coeff = coeffs
    return const + et_coeff * et + rho_coeff * rho


def _vgamma_region(photons, rho, region):
    cuts = VGAMMA_2011_CUTS[region]
    et = photons.pt
    return (
        (_field(photons, "sieie") <= cuts["sieie_max"])
        & (_field(photons, "trk_iso_hollow04") <= _iso_ceiling(cuts["trk_iso"], et, rho))
        & (_field(photons, "ecal_iso04") <= _iso_ceiling(cuts["ecal_iso"], et, rho))
        & (_field(photons, "hcal_iso04") <= _iso_ceiling(cuts["hcal_iso"], et, rho))
    )


def photon_vgamma_2011(photons, rho):
    """Vgamma 2011 photon ID; ``rho`` is one pile-up density per event.

    Barrel photons also need a matched supercluster and non-vanishing
    sigmaIetaIeta / sigmaIphiIphi (spike cleaning).
    """
    rho = ak.broadcast_arrays(ak.Array(rho), photons.pt)[0]
    barrel = np.abs(photons.eta) < CUTS["vgamma_barrel_eta_max"]
    spike_clean = (
        (_field(photons, "sc_index") >= 0)
        & (_field(photons, "sieie") >= CUTS["vgamma_spike_min"])
        & (_field(photons, "sc_sipip") >= CUTS["vgamma_spike_min"])
    )
    passes_region = ak.where(
        barrel,
        _vgamma_region(photons, rho, "barrel") & spike_clean,
        _vgamma_region(photons, rho, "endcap"),
    )
    return (
        ~_field(photons, "pixel_seed")
        & (_field(photons, "hoe") <= CUTS["vgamma_hoe_max"])
        & passes_region
    )


def _nearest_jet(photons, jets):
    """dR to, neutral EM fraction of, and raw index of the nearest eligible jet.

    Eligible jets have pt >= 10 and |eta| <= 3.  Entries are None for photons
    without an eligible jet; ties go to the first jet.
    """
    jets = ak.with_field(jets, ak.local_index(jets.pt), "source_index")
    jets = jets[(jets.pt >= CUTS["em_jet_pt_min"]) & (np.abs(jets.eta) <= CUTS["em_jet_eta_max"])]
    pairs = ak.cartesian({"photon": photons, "jet": jets}, axis=1, nested=True)
    dr = pairs.photon.delta_r(pairs.jet)
    nearest = ak.argmin(dr, axis=2, keepdims=True)
    best = ak.firsts(pairs.jet[nearest], axis=2)
    return ak.firsts(dr[nearest], axis=2), best[JET_FIELDS["nef"]], best.source_index


def _em_object_status(photons, jets, kinematics):
    drmin, neutral_em, jet_index = _nearest_jet(photons, jets)
    no_jet = ak.is_none(drmin, axis=1)
    too_far = ak.fill_none(drmin > CUTS["em_jet_dr_max"], False)
    low_em = ak.fill_none(neutral_em < CUTS["em_neutral_em_frac_min"], False)

    status = ak.where(
        ~kinematics, int(EMObjectStatus.FAILED_KINEMATICS),
        ak.where(
            no_jet, int(EMObjectStatus.NO_JET),
            ak.where(
                too_far, int(EMObjectStatus.JET_TOO_FAR),
                ak.where(low_em, int(EMObjectStatus.LOW_NEUTRAL_EM), int(EMObjectStatus.PASSED)),
            ),
        ),
    )
    matched = ak.where(status == int(EMObjectStatus.PASSED), ak.fill_none(jet_index, -1), -1)
    return status, matched


def good_em_object(photons, jets):
    """EM-object selection for MET templates.

    Returns ``(status, jet_index)`` per photon: an ``EMObjectStatus`` value
    and the raw index of the matched jet (-1 unless the photon passed).  The
    matched jet should be left out of jet counting and HT.
    """
    kinematics = (
        (photons.pt >= CUTS["em_object_pt_min"])
        & (_field(photons, "hoe") <= CUTS["em_object_hoe_max"])
        & ~is_spike(photons)
    )
    return _em_object_status(photons, jets, kinematics)


def good_em_object_2012(photons, jets):
    """2012 EM-object selection: no pixel seed, pt >= 20; returns a mask."""
    kinematics = (
        ~_field(photons, "pixel_seed")
        & (photons.pt >= CUTS["em_object_2012_pt_min"])
        & (_field(photons, "hoe") <= CUTS["em_object_hoe_max"])
        & ~is_spike(photons)
    )
    status, _ = _em_object_status(photons, jets, kinematics)
    return status == int(EMObjectStatus.PASSED)
