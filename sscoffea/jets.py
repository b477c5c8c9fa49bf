"""Jet correction, selection, lepton cleaning and b-tagging.

``JetPipeline`` threads a chunk of raw jets through a fixed sequence:

    1) correct every raw jet (a strategy from ``sscoffea.corrections``),
       apply the optional energy-scale shift, then the caller's rescale;
    2) max |eta| cut;
    3) lepton overlap removal against numerator electrons and muons;
    4) min pt cut on the corrected momentum;
    5) optional b-tag operating point.

All derived per-jet quantities (corrected momentum, pass flag, b-tag flag and
discriminator, MC flavour labels, raw index) are zipped into ONE record per
raw jet (``JetCollection.record``).  Every view is taken from that record, so
flags, momenta and discriminators of a query can never disagree.

Flags are index-aligned with the raw jets.  Sorted views are freshly ordered
by descending pt; equal-pt jets keep their raw order (stable sort).
"""

import dataclasses
import logging
from enum import Enum

import awkward as ak
import numpy as np
from coffea.nanoevents.methods import vector

from sscoffea.analysis_config import BTAG_WORKING_POINTS, CUTS, JET_FIELDS, RHO_FIELD
from sscoffea.corrections import (
    CorrectionStrategy,
    NoCorrection,
    PrecomputedCorrection,
    SystematicDirection,
)
from sscoffea.leptons import is_numerator_electron, is_numerator_muon

logger = logging.getLogger(__name__)


class JetAlignmentError(ValueError):
    """Two per-jet sequences that must be index-aligned have different lengths."""


class JetType(Enum):
    PF_CORR = "pf_corr"
    PF_UNCORR = "pf_uncorr"
    PF_FAST_CORR = "pf_fast_corr"
    PF_FAST_CORR_RESIDUAL = "pf_fast_corr_residual"
    CALO_CORR = "calo_corr"
    CALO_UNCORR = "calo_uncorr"
    JPT = "jpt"
    GEN = "gen"

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unsupported jet type {value!r}; expected one of {[t.value for t in cls]}."
            ) from None

    @property
    def collection(self):
        return _JET_COLLECTIONS[self]

    @property
    def is_pf(self):
        return self.collection == "Jet"


_JET_COLLECTIONS = {
    JetType.PF_CORR: "Jet",
    JetType.PF_UNCORR: "Jet",
    JetType.PF_FAST_CORR: "Jet",
    JetType.PF_FAST_CORR_RESIDUAL: "Jet",
    JetType.CALO_CORR: "CaloJet",
    JetType.CALO_UNCORR: "CaloJet",
    JetType.JPT: "JPTJet",
    JetType.GEN: "GenJet",
}


def default_correction(jet_type):
    """Precomputed correction strategy matching a jet type."""
    jet_type = JetType.coerce(jet_type)
    if jet_type in (JetType.PF_UNCORR, JetType.CALO_UNCORR, JetType.GEN):
        return NoCorrection()
    if jet_type == JetType.PF_FAST_CORR:
        return PrecomputedCorrection(JET_FIELDS["corr_mc"], JET_FIELDS["corr_mc"])
    if jet_type == JetType.PF_FAST_CORR_RESIDUAL:
        return PrecomputedCorrection(JET_FIELDS["corr_data"], JET_FIELDS["corr_mc"])
    return PrecomputedCorrection(JET_FIELDS["corr"], JET_FIELDS["corr"])


class BtagType(Enum):
    CSVL = "CSVL"
    CSVM = "CSVM"
    CSVT = "CSVT"
    JPL = "JPL"
    JPM = "JPM"
    JPT = "JPT"

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(
                f"Unsupported b-tag operating point {value!r}; "
                f"expected one of {sorted(BTAG_WORKING_POINTS)}."
            ) from None

    @property
    def field(self):
        return BTAG_WORKING_POINTS[self.value][0]

    @property
    def threshold(self):
        return BTAG_WORKING_POINTS[self.value][1]


def btag_threshold(btag):
    return BtagType.coerce(btag).threshold


@dataclasses.dataclass(frozen=True)
class JetSelectionCriteria:
    """Immutable configuration of one jet query."""

    delta_r: float = CUTS["jet_lepton_dr"]
    min_pt: float = CUTS["jet_pt_min"]
    max_eta: float = CUTS["jet_eta_max"]
    ele_min_pt: float = CUTS["jet_ele_pt_min"]
    mu_min_pt: float = CUTS["jet_mu_pt_min"]
    btag: BtagType = None
    direction: SystematicDirection = SystematicDirection.NOMINAL
    rescale: float = 1.0

    def __post_init__(self):
        for name in ("delta_r", "min_pt", "max_eta", "ele_min_pt", "mu_min_pt"):
            value = getattr(self, name)
            if not np.isfinite(value) or value < 0:
                raise ValueError(f"JetSelectionCriteria.{name} must be finite and non-negative.")
        if not np.isfinite(self.rescale) or self.rescale <= 0:
            raise ValueError("JetSelectionCriteria.rescale must be finite and positive.")
        if self.btag is not None:
            object.__setattr__(self, "btag", BtagType.coerce(self.btag))
        object.__setattr__(self, "direction", SystematicDirection.coerce(self.direction))

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

def corrected_p4(jets, factors):
    """Raw jet momenta multiplied by per-jet factors."""
    return ak.zip(
        {
            "pt": jets.pt * factors,
            "eta": jets.eta,
            "phi": jets.phi,
            "mass": jets.mass * factors,
        },
        with_name="PtEtaPhiMLorentzVector",
        behavior=vector.behavior,
    )


def kinematic_mask(p4, min_pt, max_eta):
    """``pt >= min_pt`` and ``|eta| <= max_eta`` (both edges included)."""
    return (p4.pt >= min_pt) & (np.abs(p4.eta) <= max_eta)


def _near_any(jets_p4, leptons, delta_r):
    if leptons is None:
        return ak.zeros_like(jets_p4.pt, dtype=bool)
    dr = jets_p4.metric_table(leptons)
    return ak.fill_none(ak.any(dr < delta_r, axis=2), False)


def lepton_overlap_mask(jets_p4, electrons, muons, *, delta_r, ele_min_pt, mu_min_pt,
                        ele_selected=None, mu_selected=None):
    """True for jets within ``delta_r`` of any qualifying electron or muon.

    A lepton qualifies with pt >= its flavour threshold and, when given, its
    ``*_selected`` mask (the numerator predicate in the pipeline).
    """
    overlap = ak.zeros_like(jets_p4.pt, dtype=bool)
    for leptons, min_pt, selected in (
        (electrons, ele_min_pt, ele_selected),
        (muons, mu_min_pt, mu_selected),
    ):
        if leptons is None:
            continue
        mask = leptons.pt >= min_pt
        if selected is not None:
            mask = mask & selected
        overlap = overlap | _near_any(jets_p4, leptons[mask], delta_r)
    return overlap


def pf_jet_id(jets):
    """Loose PF jet ID from energy fractions."""
    nhf = jets[JET_FIELDS["nhf"]]
    cef = jets[JET_FIELDS["cef"]]
    nef = jets[JET_FIELDS["nef"]]
    chf = jets[JET_FIELDS["chf"]]
    return (nhf < 1.0) & (cef < 1.0) & (nef < 1.0) & ((np.abs(jets.eta) > 2.4) | (chf > 0.0))


def check_aligned(name, values, reference, reference_name="jet_flags"):
    """Raise ``JetAlignmentError`` unless ``values`` matches ``reference`` jet-by-jet."""
    if len(values) != len(reference):
        raise JetAlignmentError(
            f"{reference_name} and {name} not the same size "
            f"({len(reference)} vs {len(values)} events)."
        )
    bad = ak.num(values, axis=1) != ak.num(reference, axis=1)
    if ak.any(bad):
        first = int(np.flatnonzero(np.asarray(bad))[0])
        raise JetAlignmentError(
            f"{reference_name} and {name} not the same size in event {first}."
        )


def _pt_sorted(record, sort_by_pt):
    if not sort_by_pt:
        return record
    return record[ak.argsort(record.p4.pt, axis=1, ascending=False, stable=True)]


# ---------------------------------------------------------------------------
# Query result
# ---------------------------------------------------------------------------

class JetCollection:
    """Result of one pipeline query: one record per raw jet.

    Record fields: ``p4``, ``index``, ``passed``, and when available
    ``btag_disc``/``btagged``, ``mc_algo``, ``mc_phys``.
    """

    def __init__(self, record, criteria):
        self.record = record
        self.criteria = criteria

    def __len__(self):
        return len(self.record)

    def _field(self, name, what):
        if name not in self.record.fields:
            raise ValueError(f"{what} requested but the jets carry no such information.")
        return name

    def _passed(self, sort_by_pt):
        return _pt_sorted(self.record[self.record.passed], sort_by_pt)

    @property
    def flags(self):
        """One boolean per raw jet, in raw order."""
        return self.record.passed

    def momenta(self, sort_by_pt=True):
        return self._passed(sort_by_pt).p4

    def indices(self, sort_by_pt=True):
        """Raw indices of the selected jets, in the same order as ``momenta``."""
        return self._passed(sort_by_pt).index

    def corrected(self, sort_by_pt=True):
        """Every raw jet corrected, no selection."""
        return _pt_sorted(self.record, sort_by_pt).p4

    @property
    def btag_flags(self):
        """One boolean per raw jet: selected and b-tagged."""
        return self.record[self._field("btagged", "b-tag flags")]

    def btagged_momenta(self, sort_by_pt=True):
        btagged = self.record[self._field("btagged", "b-tagged jets")]
        return _pt_sorted(self.record[btagged], sort_by_pt).p4

    def discriminators(self, sort_by_pt=True):
        """b-tag discriminators of the selected jets, aligned with ``momenta``."""
        return self._passed(sort_by_pt)[self._field("btag_disc", "b-tag discriminators")]

    @property
    def sorted_btag_flags(self):
        """b-tag flags of the selected jets, in descending pt order."""
        return self._passed(True)[self._field("btagged", "b-tag flags")]

    def mc_algo_match(self, sort_by_pt=True):
        return self._passed(sort_by_pt)[self._field("mc_algo", "MC algorithmic flavour")]

    def mc_phys_match(self, sort_by_pt=True):
        return self._passed(sort_by_pt)[self._field("mc_phys", "MC physics flavour")]

    @property
    def count(self):
        return ak.sum(self.record.passed, axis=1)

    @property
    def count_btagged(self):
        return ak.sum(self.btag_flags, axis=1)

    @property
    def sum_pt(self):
        return ak.sum(self.record.p4.pt[self.record.passed], axis=1)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class JetPipeline:
    """Parameterized jet selection.

    Parameters
    - ``strategy``: a ``CorrectionStrategy`` (default: precomputed factors of
      ``jet_type``).
    - ``criteria``: ``JetSelectionCriteria``.
    - ``jet_type``: which raw collection ``evaluate_events`` reads.
    - ``require_jet_id``: also require the loose PF jet ID.
    - ``electron_selector`` / ``muon_selector``: predicates a lepton must pass
      to clean jets (default: numerator working points).
    """

    def __init__(self, strategy=None, criteria=None, *, jet_type=JetType.PF_FAST_CORR_RESIDUAL,
                 require_jet_id=False, electron_selector=is_numerator_electron,
                 muon_selector=is_numerator_muon):
        self.jet_type = JetType.coerce(jet_type)
        if strategy is None:
            strategy = default_correction(self.jet_type)
        if not isinstance(strategy, CorrectionStrategy):
            raise ValueError(f"Unsupported correction strategy {strategy!r}.")
        if not isinstance(strategy, (NoCorrection, PrecomputedCorrection)) and not self.jet_type.is_pf:
            raise ValueError(
                f"On-the-fly corrections are only supported for PF jets, not {self.jet_type.value}."
            )
        self.strategy = strategy
        self.criteria = criteria if criteria is not None else JetSelectionCriteria()
        self.require_jet_id = require_jet_id
        self.electron_selector = electron_selector
        self.muon_selector = muon_selector

    def with_criteria(self, **changes):
        """Same pipeline with modified criteria."""
        return JetPipeline(
            self.strategy,
            self.criteria.replace(**changes),
            jet_type=self.jet_type,
            require_jet_id=self.require_jet_id,
            electron_selector=self.electron_selector,
            muon_selector=self.muon_selector,
        )

    def _side_table(self, jets, values, field, name):
        if values is None:
            if field not in jets.fields:
                return None
            return jets[field]
        check_aligned(name, values, jets.pt)
        return values

    def evaluate(self, jets, electrons=None, muons=None, *, rho=None, is_data=False,
                 btag_disc=None, mc_algo=None, mc_phys=None):
        """Run the pipeline on a chunk of raw jets.

        Side tables (``btag_disc``, ``mc_algo``, ``mc_phys``) default to jet
        fields; when passed explicitly they must be aligned with ``jets``.
        """
        crit = self.criteria
        factors = self.strategy.factors(jets, rho=rho, is_data=is_data, direction=crit.direction)
        check_aligned("correction factors", factors, jets.pt, reference_name="raw jets")
        p4 = corrected_p4(jets, factors * crit.rescale)

        eta_ok = np.abs(p4.eta) <= crit.max_eta
        overlap = lepton_overlap_mask(
            p4, electrons, muons,
            delta_r=crit.delta_r,
            ele_min_pt=crit.ele_min_pt,
            mu_min_pt=crit.mu_min_pt,
            ele_selected=None if electrons is None or self.electron_selector is None
            else self.electron_selector(electrons),
            mu_selected=None if muons is None or self.muon_selector is None
            else self.muon_selector(muons),
        )
        passed = eta_ok & ~overlap & (p4.pt >= crit.min_pt)
        if self.require_jet_id:
            passed = passed & pf_jet_id(jets)

        fields = {
            "p4": p4,
            "index": ak.local_index(jets.pt),
            "passed": passed,
        }

        if crit.btag is not None:
            disc = self._side_table(jets, btag_disc, crit.btag.field, "btag discriminators")
            if disc is None:
                raise ValueError(
                    f"b-tag operating point {crit.btag.value} needs the '{crit.btag.field}' jet field."
                )
            fields["btag_disc"] = disc
            fields["btagged"] = passed & (disc > crit.btag.threshold)

        algo = self._side_table(jets, mc_algo, JET_FIELDS["mc_algo"], "pfjets_mcflavorAlgo")
        if algo is not None:
            fields["mc_algo"] = algo
        phys = self._side_table(jets, mc_phys, JET_FIELDS["mc_phys"], "pfjets_mcflavorPhys")
        if phys is not None:
            fields["mc_phys"] = phys

        record = ak.zip(fields, depth_limit=2, behavior=vector.behavior)
        return JetCollection(record, crit)

    def evaluate_events(self, events, electrons=None, muons=None, *, is_data=False):
        """Read jets (and rho when needed) from a NanoEvents chunk and evaluate."""
        jets = events[self.jet_type.collection]
        rho = None
        if RHO_FIELD in events.fields:
            rho = events[RHO_FIELD]
        return self.evaluate(jets, electrons, muons, rho=rho, is_data=is_data)

    def all_corrected(self, jets, sort_by_pt=True, *, rho=None, is_data=False):
        """Every raw jet with the correction, shift and rescale applied; no cuts."""
        return self.with_criteria(btag=None).evaluate(jets, rho=rho, is_data=is_data).corrected(sort_by_pt)
