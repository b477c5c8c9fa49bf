"""Tests for sscoffea.leptons: working points, candidates and lepton vetoes."""

import awkward as ak
import numpy as np
import pytest
from coffea.nanoevents.methods import vector

from sscoffea.leptons import (
    additional_leptons,
    electron_in_barrel,
    electron_in_crack,
    has_third_lepton,
    highest_pt_additional_lepton,
    is_denominator_electron,
    is_denominator_muon,
    is_good_electron,
    is_good_muon,
    is_isolated_electron,
    is_isolated_muon,
    is_numerator_electron,
    is_numerator_muon,
    lepton_at,
    makes_extra_gamma_star,
    makes_extra_z,
    numerator_electrons,
    numerator_muons,
    passes_three_charge,
    to_candidates,
)

ak.behavior.update(vector.behavior)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_ELE_DEFAULTS = {
    "pt": 30.0, "eta": 0.0, "phi": 0.0, "mass": 0.000511, "charge": -1,
    "dxy": 0.001, "cutBased": 4, "hoe": 0.01, "pfRelIso03_all": 0.01,
    "deltaEtaSC": 0.0, "tightCharge": 2,
}
_MU_DEFAULTS = {
    "pt": 30.0, "eta": 0.0, "phi": 0.0, "mass": 0.10566, "charge": 1,
    "dxy": 0.001, "tightId": True, "looseId": True, "pfRelIso04_all": 0.01,
    "isPFcand": True, "isGlobal": True, "isTracker": True,
}


def _collection(events, defaults):
    """Build a jagged lepton collection from per-event lists of field overrides."""
    counts = [len(objs) for objs in events]
    fields = {}
    for name, default in defaults.items():
        flat = np.asarray([obj.get(name, default) for objs in events for obj in objs], dtype=np.asarray(default).dtype)
        fields[name] = ak.unflatten(flat, counts)
    return ak.zip(fields, with_name="PtEtaPhiMLorentzVector", behavior=vector.behavior)


def _electrons(*events):
    return _collection(events, _ELE_DEFAULTS)


def _muons(*events):
    return _collection(events, _MU_DEFAULTS)


# ---------------------------------------------------------------------------
# Working points
# ---------------------------------------------------------------------------

class TestElectronGeometry:
    def test_barrel_and_crack(self):
        ele = _electrons([{"eta": 0.5}, {"eta": 1.5}, {"eta": 2.0}, {"eta": 1.4, "deltaEtaSC": 0.1}])
        assert ak.to_list(electron_in_barrel(ele)) == [[True, False, False, False]]
        assert ak.to_list(electron_in_crack(ele)) == [[False, True, False, True]]

    def test_missing_sc_offset_falls_back_to_track_eta(self):
        ele = _electrons([{"eta": 1.5}])
        ele = ele[[f for f in ele.fields if f != "deltaEtaSC"]]
        assert ak.to_list(electron_in_crack(ele)) == [[True]]


class TestElectronWorkingPoints:
    def test_good_electron(self):
        ele = _electrons([
            {},
            {"dxy": 0.02},
            {"cutBased": 2},
            {"hoe": 0.09},
            {"hoe": 0.09, "eta": 2.0},
        ])
        assert ak.to_list(is_good_electron(ele)) == [[True, False, False, True, False]]

    def test_isolation_is_strict(self):
        ele = _electrons([{"pfRelIso03_all": 0.089}, {"pfRelIso03_all": 0.09}])
        assert ak.to_list(is_isolated_electron(ele)) == [[True, False]]

    def test_numerator_is_good_and_isolated(self):
        ele = _electrons([{}, {"pfRelIso03_all": 0.2}, {"cutBased": 1}])
        assert ak.to_list(is_numerator_electron(ele)) == [[True, False, False]]

    def test_denominator_relaxed(self):
        ele = _electrons([
            {"cutBased": 2, "pfRelIso03_all": 0.6},
            {"cutBased": 2, "pfRelIso03_all": 0.61},
            {"cutBased": 1, "pfRelIso03_all": 0.01},
        ])
        assert ak.to_list(is_denominator_electron(ele)) == [[True, False, False]]

    def test_numerator_implies_denominator(self):
        ele = _electrons([{}, {"pfRelIso03_all": 0.3}, {"dxy": 0.5}])
        num = ak.to_list(ak.flatten(is_numerator_electron(ele)))
        den = ak.to_list(ak.flatten(is_denominator_electron(ele)))
        assert all(d for n, d in zip(num, den) if n)


class TestMuonWorkingPoints:
    def test_good_muon(self):
        mu = _muons([{}, {"dxy": 0.006}, {"tightId": False}])
        assert ak.to_list(is_good_muon(mu)) == [[True, False, False]]

    def test_isolation(self):
        mu = _muons([{"pfRelIso04_all": 0.099}, {"pfRelIso04_all": 0.1}])
        assert ak.to_list(is_isolated_muon(mu)) == [[True, False]]
        assert ak.to_list(is_numerator_muon(mu)) == [[True, False]]

    def test_denominator(self):
        mu = _muons([
            {"pfRelIso04_all": 0.4, "dxy": 0.2},
            {"pfRelIso04_all": 0.41},
            {"dxy": 0.21},
            {"looseId": False},
        ])
        assert ak.to_list(is_denominator_muon(mu)) == [[True, False, False, False]]


class TestThreeCharge:
    def test_tight_charge_fallback(self):
        ele = _electrons([{"tightCharge": 2}, {"tightCharge": 1}])
        assert ak.to_list(passes_three_charge(ele)) == [[True, False]]

    def test_explicit_charges(self):
        ele = _electrons([{}, {}, {}])
        ele = ak.with_field(ele, ak.Array([[1, 1, 1]]), "gsfCharge")
        ele = ak.with_field(ele, ak.Array([[1, 0, -1]]), "ctfCharge")
        ele = ak.with_field(ele, ak.Array([[1, 1, 1]]), "scCharge")
        assert ak.to_list(passes_three_charge(ele)) == [[True, False, False]]


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

class TestNumeratorCollections:
    def test_sorted_and_cut(self):
        ele = _electrons([{"pt": 25.0}, {"pt": 40.0}, {"pt": 15.0}, {"pt": 50.0, "eta": 2.5}])
        assert ak.to_list(numerator_electrons(ele).pt) == [[40.0, 25.0]]
        assert ak.to_list(numerator_electrons(ele, pt_cut=10.0).pt) == [[40.0, 25.0, 15.0]]

    def test_eta_edge_included(self):
        mu = _muons([{"eta": 2.4}, {"eta": -2.41}])
        assert ak.to_list(ak.num(numerator_muons(mu))) == [1]


class TestCandidates:
    def test_merge_sorted_with_pdg_ids(self):
        ele = _electrons([{"pt": 35.0, "charge": -1}], [])
        mu = _muons([{"pt": 50.0, "charge": 1}, {"pt": 20.0, "charge": -1}], [{"pt": 22.0}])
        cands = to_candidates(ele, mu)
        assert ak.to_list(cands.pt) == [[50.0, 35.0, 20.0], [22.0]]
        assert ak.to_list(cands.pdgId) == [[-13, 11, 13], [-13]]
        assert ak.to_list(cands.flavor) == [["muon", "electron", "muon"], ["muon"]]
        assert ak.to_list(cands.index) == [[0, 0, 1], [0]]

    def test_source_index_preserved(self):
        mu = _muons([{"pt": 10.0}, {"pt": 50.0}])
        mu = ak.with_field(mu, ak.local_index(mu.pt), "source_index")
        cands = to_candidates(_electrons([]), mu[mu.pt > 20.0])
        assert ak.to_list(cands.index) == [[1]]

    def test_lepton_at(self):
        cands = to_candidates(_electrons([{"pt": 30.0}], []), _muons([], []))
        assert ak.to_list(lepton_at(cands, 0).pt) == [30.0, None]
        assert ak.to_list(lepton_at(cands, 3).pt) == [None, None]

    def test_lepton_at_negative_index(self):
        cands = to_candidates(_electrons([]), _muons([]))
        with pytest.raises(IndexError):
            lepton_at(cands, -1)


# ---------------------------------------------------------------------------
# Vetoes
# ---------------------------------------------------------------------------

class TestAdditionalLeptons:
    def test_hypothesis_leptons_excluded(self):
        mu = _muons([{"pt": 40.0}, {"pt": 30.0, "phi": 2.0}, {"pt": 15.0, "phi": -2.0}])
        hyp = ak.Array([[True, True, False]])
        extra = additional_leptons(_electrons([]), mu, 10.0, hyp_mu_mask=hyp)
        assert ak.to_list(extra.pt) == [[15.0]]
        assert ak.to_list(extra.index) == [[2]]
        assert ak.to_list(has_third_lepton(_electrons([]), mu, 10.0, hyp_mu_mask=hyp)) == [True]

    def test_third_lepton_cuts(self):
        mu = _muons([
            {"pt": 15.0, "pfRelIso04_all": 0.2},
            {"pt": 15.0, "dxy": 0.03, "phi": 1.0},
            {"pt": 9.0, "phi": 2.0},
        ])
        ele = _electrons([{"pt": 15.0, "cutBased": 1}, {"pt": 15.0, "eta": 1.5, "phi": 1.0}])
        assert ak.to_list(has_third_lepton(ele, mu, 10.0)) == [False]

    def test_electron_near_muon_removed(self):
        mu = _muons([{"pt": 15.0}])
        ele = _electrons([{"pt": 25.0, "phi": 0.05}, {"pt": 20.0, "phi": 1.0}])
        extra = additional_leptons(ele, mu, 10.0)
        assert ak.to_list(extra.flavor) == [["electron", "muon"]]
        assert ak.to_list(extra.pt) == [[20.0, 15.0]]

    def test_highest_pt(self):
        mu = _muons([{"pt": 15.0}], [])
        ele = _electrons([{"pt": 25.0, "phi": 2.0}], [])
        lead = highest_pt_additional_lepton(ele, mu, 10.0)
        assert ak.to_list(lead.pt) == [25.0, None]


class TestExtraZ:
    def _event(self, extra_charge=-1, extra_iso=0.01):
        mu = _muons([
            {"pt": 45.5, "phi": 0.0, "charge": 1},
            {"pt": 30.0, "phi": 1.5, "charge": 1},
            {"pt": 45.5, "phi": np.pi, "charge": extra_charge, "pfRelIso04_all": extra_iso},
        ])
        hyp = ak.Array([[True, True, False]])
        return _electrons([]), mu, hyp

    def test_opposite_sign_pair_in_window(self):
        ele, mu, hyp_mu = self._event()
        hyp_ele = ak.zeros_like(ele.pt, dtype=bool)
        assert ak.to_list(makes_extra_z(ele, mu, hyp_ele, hyp_mu)) == [True]

    def test_same_sign_pair_ignored(self):
        ele, mu, hyp_mu = self._event(extra_charge=1)
        hyp_ele = ak.zeros_like(ele.pt, dtype=bool)
        assert ak.to_list(makes_extra_z(ele, mu, hyp_ele, hyp_mu)) == [False]

    def test_isolation_only_with_id_iso(self):
        ele, mu, hyp_mu = self._event(extra_iso=0.3)
        hyp_ele = ak.zeros_like(ele.pt, dtype=bool)
        assert ak.to_list(makes_extra_z(ele, mu, hyp_ele, hyp_mu)) == [False]
        assert ak.to_list(makes_extra_z(ele, mu, hyp_ele, hyp_mu, apply_id_iso=False)) == [True]

    def test_no_cross_flavour_pairs(self):
        ele = _electrons([{"pt": 45.5, "phi": np.pi, "charge": -1}])
        mu = _muons([{"pt": 45.5, "charge": 1}, {"pt": 30.0, "phi": 1.5}])
        hyp_ele = ak.Array([[False]])
        hyp_mu = ak.Array([[True, True]])
        assert ak.to_list(makes_extra_z(ele, mu, hyp_ele, hyp_mu)) == [False]


class TestExtraGammaStar:
    def _muon_event(self, extra_pt=6.0, extra_phi=0.3, extra_charge=-1):
        mu = _muons([
            {"pt": 30.0, "phi": 0.0, "charge": 1},
            {"pt": 25.0, "phi": -2.5, "charge": 1},
            {"pt": extra_pt, "phi": extra_phi, "charge": extra_charge},
        ])
        hyp_mu = ak.Array([[True, True, False]])
        ele = _electrons([])
        return ele, mu, ak.zeros_like(ele.pt, dtype=bool), hyp_mu

    def test_low_mass_pair_vetoed(self):
        # m(mu30, mu6, dphi=0.3) ~ 4 GeV
        ele, mu, hyp_ele, hyp_mu = self._muon_event()
        assert ak.to_list(makes_extra_gamma_star(ele, mu, hyp_ele, hyp_mu)) == [True]

    def test_pair_above_mass_window_kept(self):
        # m(mu30, mu6, dphi=2.0) ~ 23 GeV
        ele, mu, hyp_ele, hyp_mu = self._muon_event(extra_phi=2.0)
        assert ak.to_list(makes_extra_gamma_star(ele, mu, hyp_ele, hyp_mu)) == [False]

    def test_same_sign_pair_ignored(self):
        ele, mu, hyp_ele, hyp_mu = self._muon_event(extra_charge=1)
        assert ak.to_list(makes_extra_gamma_star(ele, mu, hyp_ele, hyp_mu)) == [False]

    def test_extra_lepton_below_threshold_ignored(self):
        ele, mu, hyp_ele, hyp_mu = self._muon_event(extra_pt=4.0)
        assert ak.to_list(makes_extra_gamma_star(ele, mu, hyp_ele, hyp_mu)) == [False]

    def test_lower_pt_threshold_than_extra_z(self):
        ele, mu, hyp_ele, hyp_mu = self._muon_event()
        assert ak.to_list(makes_extra_z(ele, mu, hyp_ele, hyp_mu)) == [False]

    def test_electron_veto_id_only_with_id_iso(self):
        ele = _electrons([
            {"pt": 30.0, "charge": -1},
            {"pt": 25.0, "phi": -2.5, "charge": -1},
            {"pt": 6.0, "phi": 0.3, "charge": 1, "cutBased": 0},
        ])
        hyp_ele = ak.Array([[True, True, False]])
        mu = _muons([])
        hyp_mu = ak.zeros_like(mu.pt, dtype=bool)
        assert ak.to_list(makes_extra_gamma_star(ele, mu, hyp_ele, hyp_mu)) == [False]
        assert ak.to_list(makes_extra_gamma_star(ele, mu, hyp_ele, hyp_mu, apply_id_iso=False)) == [True]

    def test_events_without_extra_leptons(self):
        ele = _electrons([], [])
        mu = _muons([{"pt": 30.0}, {"pt": 25.0, "phi": 2.0}], [])
        hyp_ele = ak.zeros_like(ele.pt, dtype=bool)
        hyp_mu = ak.Array([[True, True], []])
        assert ak.to_list(makes_extra_gamma_star(ele, mu, hyp_ele, hyp_mu)) == [False, False]
