"""Tests for bin/run_analysis.py helpers."""

import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

import coffea.processor as coffea_processor
import sscoffea.analyzer as analyzer_mod


BIN_DIR = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "bin",
)
if BIN_DIR not in sys.path:
    sys.path.insert(0, BIN_DIR)

import run_analysis


def _args(**overrides):
    args = SimpleNamespace(
        era="Run2012",
        sample="TTbar",
        output=None,
        name=None,
        executor="iterative",
        workers=4,
        chunksize=1000,
        maxchunks=None,
        systs=[],
        analysis_type="high_pt",
        btag="CSVM",
        jet_type="pf_corr",
        jec=None,
        jes_uncertainty=None,
        jer_seed=None,
    )
    for k, v in overrides.items():
        setattr(args, k, v)
    return args


class TestValidateArguments:
    def test_defaults_valid(self):
        run_analysis.validate_arguments(_args())

    @pytest.mark.parametrize("field", ["workers", "chunksize"])
    def test_positive_counts(self, field):
        with pytest.raises(ValueError, match=field):
            run_analysis.validate_arguments(_args(**{field: 0}))

    def test_negative_seed(self):
        with pytest.raises(ValueError, match="jer-seed"):
            run_analysis.validate_arguments(_args(jer_seed=-5))

    def test_jes_needs_payload(self):
        with pytest.raises(ValueError, match="jes-uncertainty"):
            run_analysis.validate_arguments(_args(systs=["jes"]))
        run_analysis.validate_arguments(_args(systs=["jes"], jes_uncertainty=["jes.json", "Total"]))


class TestOutputPath:
    def test_explicit(self):
        assert run_analysis._output_path(_args(output=Path("out.root"))) == Path("out.root")

    def test_default_with_sample_and_name(self):
        path = run_analysis._output_path(_args(name="test"))
        assert path == Path("SS_Plotter") / "rootfiles" / "Run2012" / "SSAnalyzer_TTbar_test.root"

    def test_default_all_samples(self):
        path = run_analysis._output_path(_args(sample=None))
        assert path.name == "SSAnalyzer.root"


def test_process_fileset_passes_options(monkeypatch):
    """The processor and runner receive the CLI options."""

    captured = {}

    class FakeIterativeExecutor:
        pass

    class FakeRunner:
        def __init__(self, **kwargs):
            captured["runner"] = kwargs

        def preprocess(self, fileset, treename):
            return {"preprocessed": True}

        def __call__(self, preproc, treename, processor_instance):
            captured["processor"] = processor_instance
            return {"TTJets": {}}, {"chunks": 0}

    class FakeSameSignAnalysis:
        def __init__(self, **kwargs):
            self.kwargs = kwargs

    monkeypatch.setattr(coffea_processor, "IterativeExecutor", FakeIterativeExecutor)
    monkeypatch.setattr(coffea_processor, "Runner", FakeRunner)
    monkeypatch.setattr(analyzer_mod, "SameSignAnalysis", FakeSameSignAnalysis)

    args = _args(systs=["lumi", "jer"], jer_seed=11, btag="CSVT")
    hists = run_analysis._process_fileset(args, {"TTJets": {"files": {}, "metadata": {}}})

    assert hists == {"TTJets": {}}
    assert captured["runner"]["skipbadfiles"] is True
    assert captured["runner"]["chunksize"] == 1000
    assert isinstance(captured["runner"]["executor"], FakeIterativeExecutor)
    kwargs = captured["processor"].kwargs
    assert kwargs["enabled_systs"] == ["lumi", "jer"]
    assert kwargs["jer_seed"] == 11
    assert kwargs["btag"] == "CSVT"
