"""Tests for sscoffea.fakerates: fake-rate lookups and MC origin categories."""

import logging

import awkward as ak
import numpy as np
import pytest
import uproot

from sscoffea.fakerates import (
    FakeRateTable,
    FakeRateVersion,
    electron_fake_category,
    muon_fake_category,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ETA_EDGES = np.array([0.0, 1.0, 2.5])
PT_EDGES = np.array([10.0, 20.0, 35.0])
VALUES = np.array([[0.1, 0.2], [0.3, 0.4]])
ERRORS = np.array([[0.01, 0.02], [0.03, 0.04]])


def _table():
    return FakeRateTable(VALUES, ERRORS, ETA_EDGES, PT_EDGES, name="test")


def _write_maps(path, version):
    prob_name, err_name = FakeRateVersion.coerce(version).histograms
    with uproot.recreate(path) as fout:
        fout[prob_name] = (VALUES, ETA_EDGES, PT_EDGES)
        fout[err_name] = (ERRORS, ETA_EDGES, PT_EDGES)


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------

class TestFakeRateVersion:
    def test_histogram_names(self):
        assert FakeRateVersion.MU_V1.histograms == ("QCD30_mu_FR_etavspt", "QCD30_mu_FRErr_etavspt")
        assert FakeRateVersion.coerce("EL_V3").histograms[0] == "QCD30_el_IDy_ISO_04_FRptvseta"

    def test_muon_flag(self):
        assert FakeRateVersion.MU_V1.is_muon
        assert not FakeRateVersion.EL_V1.is_muon

    def test_unknown_version(self):
        with pytest.raises(ValueError, match="fake-rate version"):
            FakeRateVersion.coerce("el_v9")


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class TestLookup:
    def test_bins(self):
        prob, err = _table().lookup(np.array([15.0, 25.0]), np.array([0.5, -1.5]))
        np.testing.assert_allclose(prob, [0.1, 0.4])
        np.testing.assert_allclose(err, [0.01, 0.04])

    def test_high_pt_uses_last_bin(self):
        prob, err = _table().lookup(np.array([500.0, 35.0]), np.array([0.5, 2.0]))
        np.testing.assert_allclose(prob, [0.2, 0.4])
        np.testing.assert_allclose(err, [0.02, 0.04])

    def test_upper_pt(self):
        assert _table().upper_pt == pytest.approx(34.999)

    def test_eta_outside_axis_gives_zero(self):
        prob, err = _table().lookup(np.array([15.0, 15.0]), np.array([2.5, -3.0]))
        np.testing.assert_allclose(prob, [0.0, 0.0])
        np.testing.assert_allclose(err, [0.0, 0.0])

    def test_pt_below_axis_gives_zero(self):
        prob, _ = _table().lookup(np.array([5.0]), np.array([0.5]))
        np.testing.assert_allclose(prob, [0.0])

    def test_jagged_input(self):
        pt = ak.Array([[15.0, 25.0], [], [12.0]])
        eta = ak.Array([[0.5, 1.5], [], [-0.2]])
        prob, err = _table().lookup(pt, eta)
        assert ak.to_list(ak.num(prob)) == [2, 0, 1]
        np.testing.assert_allclose(ak.flatten(prob).to_numpy(), [0.1, 0.4, 0.1])
        np.testing.assert_allclose(ak.flatten(err).to_numpy(), [0.01, 0.04, 0.01])

    def test_zero_probability_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="sscoffea.fakerates"):
            _table().lookup(np.array([15.0]), np.array([3.0]))
        assert "zero fake probability" in caplog.text

    def test_unphysical_probability_warns(self, caplog):
        table = FakeRateTable(np.array([[1.5, 0.2], [0.3, -0.1]]), ERRORS, ETA_EDGES, PT_EDGES)
        with caplog.at_level(logging.WARNING, logger="sscoffea.fakerates"):
            prob, _ = table.lookup(np.array([15.0, 25.0]), np.array([0.5, 1.5]))
        np.testing.assert_allclose(prob, [1.5, -0.1])
        assert "outside [0, 1]" in caplog.text

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="shape"):
            FakeRateTable(VALUES[:1], ERRORS, ETA_EDGES, PT_EDGES)


class TestFromRoot:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FakeRateTable.from_root(str(tmp_path / "missing.root"), "mu_v1")

    def test_reads_maps(self, tmp_path):
        path = str(tmp_path / "fakerates.root")
        _write_maps(path, "el_v2")
        table = FakeRateTable.from_root(path, FakeRateVersion.EL_V2)
        assert table.name == "el_v2"
        np.testing.assert_allclose(table.eta_edges, ETA_EDGES)
        np.testing.assert_allclose(table.pt_edges, PT_EDGES)
        prob, err = table.lookup(np.array([25.0]), np.array([1.2]))
        np.testing.assert_allclose(prob, [0.4])
        np.testing.assert_allclose(err, [0.04])

    def test_wrong_version_missing_histogram(self, tmp_path):
        path = str(tmp_path / "fakerates.root")
        _write_maps(path, "el_v1")
        with pytest.raises(KeyError):
            FakeRateTable.from_root(path, "mu_v1")


# ---------------------------------------------------------------------------
# MC categories
# ---------------------------------------------------------------------------

class TestFakeCategories:
    def test_electron_categories(self):
        mc_id = np.array([11, 22, 130, 211, -11, 11, -11, 3122])
        mother = np.array([22, 0, 0, 0, 2212, 511, 24, 0])
        assert ak.to_list(electron_fake_category(mc_id, mother)) == [1, 1, 1, 2, 2, 3, 4, 2]

    def test_muon_categories(self):
        mc_id = np.array([211, 13, -13, 13, 13])
        mother = np.array([0, 211, 521, 4122, 1000])
        assert ak.to_list(muon_fake_category(mc_id, mother)) == [1, 2, 3, 3, 4]

    def test_jagged(self):
        mc_id = ak.Array([[11], []])
        mother = ak.Array([[521], []])
        assert ak.to_list(electron_fake_category(mc_id, mother)) == [[3], []]
