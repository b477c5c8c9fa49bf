"""Electron and muon working points for the same-sign selection.

All predicates are columnar: they take jagged NanoAOD-like ``Electron`` /
``Muon`` records and return jagged boolean masks aligned with the input.

Working points:
  - good:         tightened |d0| plus identification (no isolation)
  - isolated:     relative PF isolation below the numerator threshold
  - numerator:    good AND isolated
  - denominator:  relaxed (fakeable-object) identification and isolation
  - third lepton: POG-like loose electrons / tight muons used for vetoes
"""

import logging

import awkward as ak
import numpy as np
from coffea.nanoevents.methods import vector

from sscoffea.analysis_config import CUTS
from sscoffea.log_utils import warn_once

logger = logging.getLogger(__name__)


def _fields(collection):
    return set(collection.fields)


def electron_sc_eta(electrons):
    """Supercluster eta (falls back to track eta if the SC offset is missing)."""
    if "deltaEtaSC" in _fields(electrons):
        return electrons.eta + electrons.deltaEtaSC
    warn_once(logger, "electron_sc_eta", "Electron.deltaEtaSC missing; using track eta for barrel/endcap decisions.")
    return electrons.eta


def electron_in_barrel(electrons):
    return np.abs(electron_sc_eta(electrons)) < CUTS["barrel_eta_max"]


def electron_in_crack(electrons):
    sc_eta = np.abs(electron_sc_eta(electrons))
    return (sc_eta > CUTS["barrel_eta_max"]) & (sc_eta < CUTS["endcap_eta_min"])


# ---------------------------------------------------------------------------
# Numerator / denominator working points
# ---------------------------------------------------------------------------

def is_good_electron(electrons):
    """Tight |d0|, medium cut-based ID and a barrel/endcap H/E requirement."""
    hoe_max = ak.where(
        electron_in_barrel(electrons),
        CUTS["ele_hoe_max_barrel"],
        CUTS["ele_hoe_max_endcap"],
    )
    return (
        (np.abs(electrons.dxy) <= CUTS["ele_d0_max"])
        & (electrons.cutBased >= CUTS["ele_id_medium"])
        & (electrons.hoe < hoe_max)
    )


def is_good_muon(muons):
    return (np.abs(muons.dxy) <= CUTS["mu_d0_max"]) & muons.tightId


def is_isolated_electron(electrons):
    return electrons.pfRelIso03_all < CUTS["ele_iso_max"]


def is_isolated_muon(muons):
    return muons.pfRelIso04_all < CUTS["mu_iso_max"]


def is_numerator_electron(electrons):
    return is_good_electron(electrons) & is_isolated_electron(electrons)


def is_numerator_muon(muons):
    return is_good_muon(muons) & is_isolated_muon(muons)


def is_denominator_electron(electrons):
    """Fakeable electron: loose ID with isolation relaxed to 0.6."""
    return (
        (electrons.cutBased >= CUTS["ele_id_loose"])
        & (electrons.pfRelIso03_all <= CUTS["ele_fo_iso_max"])
    )


def is_denominator_muon(muons):
    """Fakeable muon: loose ID, relaxed isolation and d0."""
    return (
        muons.looseId
        & (muons.pfRelIso04_all <= CUTS["mu_fo_iso_max"])
        & (np.abs(muons.dxy) <= CUTS["mu_fo_d0_max"])
    )


def passes_three_charge(electrons):
    """Require the GSF, CTF and supercluster charges to agree.

    Uses explicit ``gsfCharge``/``ctfCharge``/``scCharge`` fields when present
    (a ``ctfCharge`` of 0 means no matched CTF track), otherwise NanoAOD's
    ``tightCharge == 2``.
    """
    fields = _fields(electrons)
    if {"gsfCharge", "ctfCharge", "scCharge"} <= fields:
        return (
            (electrons.ctfCharge != 0)
            & (electrons.scCharge == electrons.gsfCharge)
            & (electrons.gsfCharge == electrons.ctfCharge)
        )
    return electrons.tightCharge == 2


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

def _good(collection, selector, pt_cut):
    mask = (
        (collection.pt >= pt_cut)
        & (np.abs(collection.eta) <= CUTS["lepton_eta_max"])
        & selector(collection)
    )
    selected = collection[mask]
    return selected[ak.argsort(selected.pt, axis=1, ascending=False, stable=True)]


def numerator_electrons(electrons, pt_cut=CUTS["lepton_pt_min"]):
    """Numerator electrons with pt >= ``pt_cut`` and |eta| <= 2.4, sorted by pt."""
    return _good(electrons, is_numerator_electron, pt_cut)


def numerator_muons(muons, pt_cut=CUTS["lepton_pt_min"]):
    """Numerator muons with pt >= ``pt_cut`` and |eta| <= 2.4, sorted by pt."""
    return _good(muons, is_numerator_muon, pt_cut)


def to_candidates(electrons, muons):
    """Merge electrons and muons into one pt-sorted candidate collection.

    Each candidate carries ``charge``, ``pdgId`` (-11*charge / -13*charge),
    ``flavor`` ("electron" / "muon") and ``index``: the ``source_index``
    field when the input has one, else the position in the given collection.
    """
    def _common(collection, pdg, flavor):
        if "source_index" in _fields(collection):
            index = collection.source_index
        else:
            index = ak.local_index(collection.pt)
        candidates = ak.zip(
            {
                "pt": collection.pt,
                "eta": collection.eta,
                "phi": collection.phi,
                "mass": collection.mass,
                "charge": collection.charge,
                "pdgId": -pdg * collection.charge,
                "index": index,
            },
            with_name="PtEtaPhiMLorentzVector",
            behavior=vector.behavior,
        )
        return ak.with_field(candidates, flavor, "flavor")

    merged = ak.concatenate(
        [_common(electrons, 11, "electron"), _common(muons, 13, "muon")], axis=1
    )
    return merged[ak.argsort(merged.pt, axis=1, ascending=False, stable=True)]


def lepton_at(leptons, index):
    """Return the ``index``-th lepton of every event (None where missing)."""
    if index < 0:
        raise IndexError(f"Lepton index must be non-negative, got {index}.")
    return ak.pad_none(leptons, index + 1)[:, index]


# ---------------------------------------------------------------------------
# Third-lepton and extra-Z vetoes
# ---------------------------------------------------------------------------

def _not_hyp(collection, hyp_mask):
    if hyp_mask is None:
        return ak.ones_like(collection.pt, dtype=bool)
    return ~hyp_mask


def passes_third_muon_selection(muons, min_pt):
    return (
        (np.abs(muons.eta) <= CUTS["lepton_eta_max"])
        & (muons.pt >= min_pt)
        & muons.tightId
        & (muons.pfRelIso04_all <= CUTS["third_lepton_iso_max"])
        & (np.abs(muons.dxy) <= CUTS["third_mu_d0_max"])
    )


def passes_third_electron_selection(electrons, min_pt):
    """Third-electron selection without the muon overlap removal."""
    return (
        (electrons.cutBased >= CUTS["ele_id_loose"])
        & (np.abs(electrons.eta) <= CUTS["lepton_eta_max"])
        & (electrons.pt >= min_pt)
        & ~electron_in_crack(electrons)
        & (electrons.pfRelIso03_all <= CUTS["third_lepton_iso_max"])
    )


def electron_overlaps_muon(electrons, muons, hyp_mu_mask=None):
    """True for electrons within dR < 0.1 of a selected non-hypothesis muon."""
    veto_muons = muons[
        passes_third_muon_selection(muons, CUTS["third_lepton_mu_pt_min"])
        & _not_hyp(muons, hyp_mu_mask)
    ]
    dr = electrons.metric_table(veto_muons)
    return ak.fill_none(ak.any(dr < CUTS["third_lepton_ele_mu_dr"], axis=2), False)


def additional_leptons(electrons, muons, min_pt, *, hyp_ele_mask=None, hyp_mu_mask=None):
    """Leptons beyond the hypothesis pair passing the third-lepton selection.

    Returns pt-sorted candidates (see ``to_candidates``).
    """
    ele_mask = (
        _not_hyp(electrons, hyp_ele_mask)
        & passes_third_electron_selection(electrons, min_pt)
        & ~electron_overlaps_muon(electrons, muons, hyp_mu_mask)
    )
    mu_mask = _not_hyp(muons, hyp_mu_mask) & passes_third_muon_selection(muons, min_pt)
    # index into the full collections, not the filtered ones
    electrons = ak.with_field(electrons, ak.local_index(electrons.pt), "source_index")
    muons = ak.with_field(muons, ak.local_index(muons.pt), "source_index")
    return to_candidates(electrons[ele_mask], muons[mu_mask])


def highest_pt_additional_lepton(electrons, muons, min_pt, **hyp_masks):
    """Leading additional lepton per event, None where there is none."""
    return ak.firsts(additional_leptons(electrons, muons, min_pt, **hyp_masks))


def has_third_lepton(electrons, muons, min_pt, **hyp_masks):
    return ak.num(additional_leptons(electrons, muons, min_pt, **hyp_masks)) > 0


def _extra_lepton_masks(electrons, muons, hyp_ele_mask, hyp_mu_mask, min_pt, apply_id_iso):
    """Non-hypothesis leptons eligible to pair with the hypothesis for a resonance veto."""
    ele_extra = (
        ~hyp_ele_mask
        & (electrons.pt >= min_pt)
        & (np.abs(electrons.eta) <= CUTS["lepton_eta_max"])
    )
    mu_extra = (
        ~hyp_mu_mask
        & (muons.pt >= min_pt)
        & (np.abs(muons.eta) <= CUTS["lepton_eta_max"])
    )
    if apply_id_iso:
        ele_extra = (
            ele_extra
            & (electrons.pfRelIso03_all <= CUTS["extra_z_iso_max"])
            & (electrons.cutBased >= CUTS["ele_id_veto"])
        )
        mu_extra = (
            mu_extra
            & (muons.pfRelIso04_all <= CUTS["extra_z_iso_max"])
            & muons.isPFcand
            & (muons.isGlobal | muons.isTracker)
        )
    return ele_extra, mu_extra


def _opposite_sign_pairs(extra, hyp, mass_cut):
    pairs = ak.cartesian({"extra": extra, "hyp": hyp}, axis=1)
    opposite = pairs.extra.charge * pairs.hyp.charge < 0
    mass = np.sqrt(np.abs((pairs.extra + pairs.hyp).mass2))
    return ak.fill_none(ak.any(opposite & mass_cut(mass), axis=1), False)


def _same_flavour_veto(electrons, muons, hyp_ele_mask, hyp_mu_mask, min_pt, apply_id_iso, mass_cut):
    ele_extra, mu_extra = _extra_lepton_masks(
        electrons, muons, hyp_ele_mask, hyp_mu_mask, min_pt, apply_id_iso,
    )
    return (
        _opposite_sign_pairs(electrons[ele_extra], electrons[hyp_ele_mask], mass_cut)
        | _opposite_sign_pairs(muons[mu_extra], muons[hyp_mu_mask], mass_cut)
    )


def makes_extra_z(electrons, muons, hyp_ele_mask, hyp_mu_mask, apply_id_iso=True):
    """True where an extra same-flavour lepton forms a Z with a hypothesis lepton.

    Extra leptons need pt >= 10 and |eta| <= 2.4; with ``apply_id_iso`` they
    also need relative isolation <= 0.2 and a veto-level ID.
    """
    return _same_flavour_veto(
        electrons, muons, hyp_ele_mask, hyp_mu_mask,
        CUTS["extra_z_lepton_pt_min"], apply_id_iso,
        lambda mass: np.abs(mass - CUTS["z_mass"]) < CUTS["z_window"],
    )


def makes_extra_gamma_star(electrons, muons, hyp_ele_mask, hyp_mu_mask, apply_id_iso=True):
    """True where an extra same-flavour lepton forms a low-mass pair (< 12 GeV) with a hypothesis lepton.

    Same extra-lepton requirements as :func:`makes_extra_z` with the pt
    threshold lowered to 5 GeV.
    """
    return _same_flavour_veto(
        electrons, muons, hyp_ele_mask, hyp_mu_mask,
        CUTS["gamma_star_lepton_pt_min"], apply_id_iso,
        lambda mass: mass < CUTS["gamma_star_mass_max"],
    )
