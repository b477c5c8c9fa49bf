"""Histogram specification, creation, and filling for the same-sign analysis.

Canonical naming choice:
  - Histogram key in the output dict == numeric axis name == ROOT stem

Each spec is: (name, bins, label, getter)
  - getter(obs) -> values, where ``obs`` is the per-event observable dict
    built by the processor for one jet/MET variation.
"""

import logging
from typing import Callable, Mapping

import awkward as ak
import hist

from sscoffea.analysis_config import (
    SEL_TWO_NUMERATOR_LEPTONS, SEL_SAME_SIGN, SEL_LEAD_LEPTON_PT20, SEL_TRIGGER,
    SEL_THREE_CHARGE, SEL_NO_EXTRA_Z, SEL_NO_THIRD_LEPTON,
    SEL_MIN_TWO_JETS, SEL_MET_GT30, SEL_HT_GT80, SEL_MIN_ONE_BTAG, SEL_MIN_TWO_BTAGS,
    SEL_EE, SEL_MUMU, SEL_EMU,
)

logger = logging.getLogger(__name__)


Getter = Callable[[Mapping[str, ak.Array]], ak.Array]

HIST_SPECS: list[tuple[str, tuple[int, float, float], str, Getter]] = [
    ("njets",                (10,  0,   10), r"$N_{jets}$",                               lambda obs: obs["njets"]),
    ("nbtags",               (5,   0,    5), r"$N_{b-tags}$",                             lambda obs: obs["nbtags"]),
    ("ht",                   (100, 0, 1000), r"$H_{T}$ [GeV]",                            lambda obs: obs["ht"]),
    ("met",                  (50,  0,  500), r"$E_{T}^{miss}$ [GeV]",                     lambda obs: obs["met"]),
    ("lead_jet_pt",          (100, 0, 1000), r"$p_{T}$ of the leading jet [GeV]",         lambda obs: obs["lead_jet_pt"]),
    ("pt_leading_lepton",    (50,  0,  500), r"$p_{T}$ of the leading lepton [GeV]",      lambda obs: obs["pt_leading_lepton"]),
    ("pt_subleading_lepton", (50,  0,  500), r"$p_{T}$ of the subleading lepton [GeV]",   lambda obs: obs["pt_subleading_lepton"]),
]

# Lepton-level steps shared by every channel, then the jet/MET steps.
_LEPTON_STEPS = [
    SEL_SAME_SIGN,
    SEL_LEAD_LEPTON_PT20,
    SEL_TRIGGER,
    SEL_THREE_CHARGE,
    SEL_NO_EXTRA_Z,
    SEL_NO_THIRD_LEPTON,
]
_JET_STEPS = [
    SEL_MIN_TWO_JETS,
    SEL_MET_GT30,
    SEL_HT_GT80,
    SEL_MIN_ONE_BTAG,
    SEL_MIN_TWO_BTAGS,
]

CUTFLOW_CHAINS = {
    flavor: [SEL_TWO_NUMERATOR_LEPTONS, channel, *_LEPTON_STEPS, *_JET_STEPS]
    for flavor, channel in (("ee", SEL_EE), ("mumu", SEL_MUMU), ("emu", SEL_EMU))
}


def _booking_specs() -> dict[str, tuple[tuple[int, float, float], str]]:
    """Return histogram booking metadata keyed by canonical histogram name."""
    return {name: (bins, label) for name, bins, label, _ in HIST_SPECS}


def create_hist(name, bins, label):
    """Create a single physics histogram with standard categorical axes."""
    return (
        hist.Hist.new
        .StrCat([], name="process", label="Process", growth=True)
        .StrCat([], name="region",  label="Analysis Region", growth=True)
        .StrCat([], name="syst",    label="Systematic", growth=True)
        .Reg(*bins, name=name, label=label)
        .Weight()
    )


def fill_histograms(output, region, cut, process_name, observables, syst_weights):
    """Fill every histogram for one region mask.

    ``syst_weights`` maps the ``syst`` axis label to per-event weights.
    """
    syst_weights_cut = {k: v[cut] for k, v in syst_weights.items()}
    for hist_name, _bins, _label, expr in HIST_SPECS:
        vals = expr(observables)[cut]
        for syst_label, sw in syst_weights_cut.items():
            output[hist_name].fill(
                process=process_name,
                region=region,
                syst=syst_label,
                **{hist_name: vals},
                weight=sw,
            )


def _relabel_cutflow(h_raw, cut_names):
    """Convert an Integer-axis cutflow histogram to one with StrCategory axis.

    This embeds the cut names as bin labels in the ROOT file, making it
    self-documenting and robust against ordering changes.
    """
    h = hist.Hist(
        hist.axis.StrCategory(cut_names, name="cut"),
        storage=h_raw.storage_type(),
    )
    h.view(flow=False)[...] = h_raw.view(flow=False)
    return h


def fill_cutflows(output, selections, weights):
    """Build cumulative cutflows for the ee, mumu, and emu channels.

    Output layout (keys under ``output["cutflow"]``):
        - per-flavor: ``ee``, ``mumu``, ``emu``
            - ``onecut`` / ``cumulative`` (and unweighted variants)
              Multi-bin histograms with StrCategory axis (bin labels are
              the cut names, e.g. "no_cuts", "same_sign", ...).
    """
    output.setdefault("cutflow", {})

    for flavor, steps in CUTFLOW_CHAINS.items():
        output["cutflow"].setdefault(flavor, {})
        bucket = output["cutflow"][flavor]

        cut_names = ["no_cuts"] + list(steps)

        cf = selections.cutflow(*steps, weights=weights)
        h_onecut_raw, h_cum_raw, _labels = cf.yieldhist(weighted=True)
        bucket["onecut"] = _relabel_cutflow(h_onecut_raw, cut_names)
        bucket["cumulative"] = _relabel_cutflow(h_cum_raw, cut_names)

        h_onecut_unw, h_cum_unw, _labels = cf.yieldhist(weighted=False)
        bucket["onecut_unweighted"] = _relabel_cutflow(h_onecut_unw, cut_names)
        bucket["cumulative_unweighted"] = _relabel_cutflow(h_cum_unw, cut_names)
