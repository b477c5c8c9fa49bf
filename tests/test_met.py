"""Tests for sscoffea.met: unclustered scaling, projected MET and type-I propagation."""

import awkward as ak
import numpy as np
import pytest
from coffea.nanoevents.methods import vector

from sscoffea.met import projected_met, scale_unclustered_met, type1_met


def _jagged(values):
    counts = [len(v) for v in values]
    return ak.unflatten(np.asarray([x for v in values for x in v], dtype=np.float64), counts)


def _p4(pts, phis, etas=None):
    pts = _jagged(pts)
    return ak.zip(
        {
            "pt": pts,
            "eta": _jagged(etas) if etas is not None else ak.zeros_like(pts),
            "phi": _jagged(phis),
            "mass": ak.zeros_like(pts),
        },
        with_name="PtEtaPhiMLorentzVector",
        behavior=vector.behavior,
    )


class TestScaleUnclusteredMet:
    def test_nominal_is_identity(self):
        jets = _p4([[50.0, 30.0]], [[0.0, 1.0]])
        leptons = _p4([[25.0]], [[2.5]])
        met = scale_unclustered_met(np.array([40.0]), np.array([-1.0]), jets, leptons, 0)
        np.testing.assert_allclose(np.asarray(met), [40.0])

    def test_only_met_scales_without_objects(self):
        jets = _p4([[]], [[]])
        leptons = _p4([[]], [[]])
        up = scale_unclustered_met(np.array([40.0]), np.array([0.3]), jets, leptons, "up")
        down = scale_unclustered_met(np.array([40.0]), np.array([0.3]), jets, leptons, -1)
        np.testing.assert_allclose(np.asarray(up), [44.0])
        np.testing.assert_allclose(np.asarray(down), [36.0])

    def test_balanced_event(self):
        """MET exactly balancing one jet has no unclustered recoil."""
        jets = _p4([[50.0]], [[0.0]])
        leptons = _p4([[]], [[]])
        met = scale_unclustered_met(np.array([50.0]), np.array([np.pi]), jets, leptons, 1)
        np.testing.assert_allclose(np.asarray(met), [50.0], atol=1e-9)

    def test_lepton_collections_summed(self):
        jets = _p4([[]], [[]])
        electrons = _p4([[10.0]], [[0.0]])
        muons = _p4([[10.0]], [[np.pi / 2]])
        single = _p4([[10.0, 10.0]], [[0.0, np.pi / 2]])
        as_list = scale_unclustered_met(np.array([30.0]), np.array([1.0]), jets, [electrons, muons], 1)
        merged = scale_unclustered_met(np.array([30.0]), np.array([1.0]), jets, single, 1)
        np.testing.assert_allclose(np.asarray(as_list), np.asarray(merged))

    def test_invalid_direction(self):
        jets = _p4([[]], [[]])
        with pytest.raises(ValueError):
            scale_unclustered_met(np.array([30.0]), np.array([1.0]), jets, jets, 2)


class TestProjectedMet:
    def test_close_lepton_projects(self):
        leptons = _p4([[30.0, 20.0]], [[0.5, 3.0]])
        out = projected_met(np.array([40.0]), np.array([0.0]), leptons)
        np.testing.assert_allclose(np.asarray(out), [40.0 * np.sin(0.5)])

    def test_far_leptons_keep_met(self):
        leptons = _p4([[30.0]], [[2.0]])
        out = projected_met(np.array([40.0]), np.array([0.0]), leptons)
        np.testing.assert_allclose(np.asarray(out), [40.0])

    def test_phi_wraps(self):
        leptons = _p4([[30.0]], [[3.0]])
        out = projected_met(np.array([40.0]), np.array([-3.0]), leptons)
        dphi = 2 * np.pi - 6.0
        np.testing.assert_allclose(np.asarray(out), [40.0 * np.sin(dphi)])

    def test_no_leptons(self):
        leptons = _p4([[], [10.0]], [[], [0.1]])
        out = projected_met(np.array([25.0, 25.0]), np.array([0.0, 0.0]), leptons)
        np.testing.assert_allclose(np.asarray(out), [25.0, 25.0 * np.sin(0.1)])


class TestType1Met:
    def test_corrections_propagate(self):
        raw = _p4([[40.0]], [[0.0]])
        met, phi = type1_met(np.array([0.0]), np.array([0.0]), raw, ak.Array([[1.25]]))
        # jet gained 10 GeV along +x, MET loses it
        np.testing.assert_allclose(np.asarray(met), [10.0])
        np.testing.assert_allclose(np.abs(np.asarray(phi)), [np.pi])

    def test_soft_jets_ignored(self):
        raw = _p4([[5.0, 40.0]], [[1.0, 0.0]])
        met, _ = type1_met(np.array([20.0]), np.array([np.pi]), raw, ak.Array([[1.5, 1.0]]))
        np.testing.assert_allclose(np.asarray(met), [20.0])

    def test_unit_factors_identity(self):
        raw = _p4([[50.0, 30.0]], [[0.0, 2.0]])
        met, phi = type1_met(np.array([35.0]), np.array([0.7]), raw, ak.Array([[1.0, 1.0]]))
        np.testing.assert_allclose(np.asarray(met), [35.0])
        np.testing.assert_allclose(np.asarray(phi), [0.7])


class TestVectorMomenta:
    """MET helpers only need ``pt``/``phi`` and accept scikit-hep vector arrays."""

    def test_unclustered_with_momentum4d(self):
        import vector as skhep_vector

        skhep_vector.register_awkward()
        fields = {"pt": [[50.0, 30.0]], "eta": [[0.0, 0.5]], "phi": [[0.0, 1.0]], "mass": [[0.0, 0.0]]}
        jets = ak.zip(fields, with_name="Momentum4D", behavior=skhep_vector.backends.awkward.behavior)
        leptons = _p4([[25.0]], [[2.5]])
        reference = scale_unclustered_met(np.array([40.0]), np.array([-1.0]), _p4([[50.0, 30.0]], [[0.0, 1.0]]), leptons, 1)
        met = scale_unclustered_met(np.array([40.0]), np.array([-1.0]), jets, leptons, 1)
        np.testing.assert_allclose(np.asarray(met), np.asarray(reference))
