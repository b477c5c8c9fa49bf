"""Same-sign dilepton Coffea analysis processor.

High-level flow per chunk:
    1) Apply lumi mask for data (golden JSON).
    2) Build numerator electrons/muons and the leading same-sign hypothesis.
    3) Run the jet pipeline for the nominal and the varied jet/MET scales.
    4) Build PackedSelections (lepton steps + per-variation jet/MET steps).
    5) Build nominal weights (+ optional lumi variation).
    6) Fill histograms and cutflows.

Output conventions:
    - Canonical histogram naming: output dict key == numeric axis name == ROOT stem.
    - All physics histograms carry categorical axes: (process, region, syst).
    - Jet/MET variations (JES, JER, unclustered MET) are separate ``syst``
      values filled with the nominal event weight.

Notes for distributed execution (Dask/Condor):
    - correctionlib payloads are cached per worker process.
    - noisy but expected fallbacks (e.g. missing b-tag or correction fields)
        are logged once per worker process via `log_utils.warn_once`.
"""

from coffea import processor
from coffea.analysis_tools import Weights, PackedSelection
from coffea.lumi_tools import LumiMask
import awkward as ak
import numpy as np
import os
import logging
from coffea.nanoevents.methods import vector

from sscoffea.analysis_config import (
    CUTS, DEFAULT_BTAG, LUMI_JSONS, LUMI_UNC, LUMIS, RHO_FIELD,
    SEL_TWO_NUMERATOR_LEPTONS, SEL_SAME_SIGN, SEL_LEAD_LEPTON_PT20, SEL_TRIGGER,
    SEL_THREE_CHARGE, SEL_NO_EXTRA_Z, SEL_NO_THIRD_LEPTON,
    SEL_MIN_TWO_JETS, SEL_MET_GT30, SEL_HT_GT80, SEL_MIN_ONE_BTAG, SEL_MIN_TWO_BTAGS,
    SEL_EE, SEL_MUMU, SEL_EMU,
)
from sscoffea.corrections import (
    FactorizedCorrection, NoCorrection, PrecomputedCorrection, SystematicDirection,
    UncertaintyShift, get_correction, load_correction_set,
)
from sscoffea.histograms import _booking_specs, create_hist, fill_histograms, fill_cutflows
from sscoffea.jets import BtagType, JetPipeline, JetSelectionCriteria, JetType, default_correction
from sscoffea.log_utils import warn_once
from sscoffea.leptons import (
    has_third_lepton, lepton_at, makes_extra_z, numerator_electrons, numerator_muons,
    passes_three_charge, to_candidates,
)
from sscoffea.met import scale_unclustered_met, type1_met
from sscoffea.resolution import smear_jets_met_ht
from sscoffea.triggers import AnalysisType, HypType, passes_trigger

ak.behavior.update(vector.behavior)
logger = logging.getLogger(__name__)


SUPPORTED_SYSTS = ("lumi", "jes", "jer", "umet")

_LEPTON_STEPS = (
    SEL_TWO_NUMERATOR_LEPTONS, SEL_SAME_SIGN, SEL_LEAD_LEPTON_PT20, SEL_TRIGGER,
    SEL_THREE_CHARGE, SEL_NO_EXTRA_Z, SEL_NO_THIRD_LEPTON,
)
_BASELINE_JET_STEPS = (SEL_MIN_TWO_JETS, SEL_MET_GT30, SEL_HT_GT80)

REGIONS = {
    f"ss_{flavor}_{tag}": (channel, _BASELINE_JET_STEPS + extra)
    for flavor, channel in (("ee", SEL_EE), ("mumu", SEL_MUMU), ("emu", SEL_EMU))
    for tag, extra in (("inclusive", ()), ("1btag", (SEL_MIN_ONE_BTAG,)), ("2btag", (SEL_MIN_TWO_BTAGS,)))
}


class SameSignAnalysis(processor.ProcessorABC):
    """Main Coffea processor for the same-sign dilepton analysis.

    Expected `events.metadata` keys (typical):
      - `era`: luminosity key (Run2011, Run2012)
      - `datatype`: "mc" or "data"
      - `physics_group`: high-level sample name (e.g. TTbar, DoubleMu)
      - `sample`: dataset identifier string
      - `xsec`, `genEventSumw` (MC only)

    Parameters
    - `enabled_systs`: systematic families to run. Supported:
      - `lumi`: `LumiUp`/`LumiDown` weight variations.
      - `jes`: `JESUp`/`JESDown` jet energy scale variations (needs `jes_uncertainty`).
      - `jer`: `JER` jet energy resolution smearing (MC only).
      - `umet`: `UnclusteredMETUp`/`UnclusteredMETDown`.
    - `analysis_type`: trigger set ("high_pt", "low_pt", "very_low_pt").
    - `btag`: b-tag operating point for the b-tag regions.
    - `jet_type`: raw jet collection and its precomputed correction.
    - `jec`: optional ``(path, name)`` of a correctionlib correction applied
      on the fly to raw jets.
    - `jes_uncertainty`: optional ``(path, name)`` of a correctionlib uncertainty.
    - `jer_seed`: fixed smearing seed; by default each event is seeded with its
      event number.
    """
    def __init__(self, enabled_systs=None, analysis_type="high_pt", btag=DEFAULT_BTAG,
                 jet_type=JetType.PF_CORR, jec=None, jes_uncertainty=None, jer_seed=None):
        enabled = enabled_systs or []
        self._enabled_systs = {str(s).strip().lower() for s in enabled if str(s).strip()}
        unknown = self._enabled_systs - set(SUPPORTED_SYSTS)
        if unknown:
            raise ValueError(f"Unknown systematics {sorted(unknown)}. Supported: {list(SUPPORTED_SYSTS)}.")
        self._analysis_type = AnalysisType.coerce(analysis_type)
        self._btag_wp = BtagType.coerce(btag) if btag is not None else None
        self._jet_type = JetType.coerce(jet_type)
        self._jec = tuple(jec) if jec is not None else None
        self._jes_uncertainty = tuple(jes_uncertainty) if jes_uncertainty is not None else None
        if jer_seed is not None and int(jer_seed) < 0:
            raise ValueError("jer_seed must be non-negative.")
        self._jer_seed = jer_seed
        booking = _booking_specs()
        self.make_output = lambda: {
            name: create_hist(name, bins, label)
            for name, (bins, label) in booking.items()
        }

    def apply_lumi_mask(self, events, era, is_data):
        """Apply golden-JSON lumi mask for data.

        Returns filtered events. For MC (or if no JSON is configured), returns
        the input events unchanged.
        """
        if not is_data:
            return events

        json_path = os.environ.get("LUMI_JSON") or LUMI_JSONS.get(era)
        if json_path:
            try:
                mask = LumiMask(json_path)
                events = events[mask(events.run, events.luminosityBlock)]
                if len(events) == 0:
                    warn_once(logger, f"lumi_mask_empty::{era}", "All events removed by lumi mask for era '%s'.", era)
            except OSError as e:
                logger.warning(f"Failed to load lumi JSON '{json_path}': {e}")
        else:
            logger.warning(f"No lumi JSON found for era '{era}'. Data left unmasked.")

        return events

    # ------------------------------------------------------------------
    # Leptons
    # ------------------------------------------------------------------

    @staticmethod
    def _hyp_mask(collection, pdg, hyp_leptons):
        """True for objects of ``collection`` that are one of the hypothesis leptons."""
        idx = ak.local_index(collection.pt)
        mask = ak.zeros_like(collection.pt, dtype=bool)
        for lep in hyp_leptons:
            lep_index = ak.fill_none(lep.index, -1)
            is_flavor = ak.fill_none(np.abs(lep.pdgId) == pdg, False)
            mask = mask | ((idx == lep_index) & is_flavor)
        return mask

    def select_leptons(self, events):
        """Build numerator leptons and the leading-pair hypothesis.

        Returns
        - `leptons`: merged numerator e+mu candidates sorted by pT
        - `hyp`: dict with `lead`, `sublead`, `hyp_type`, and hypothesis masks
          over the full Electron / Muon collections
        - `electrons`, `muons`: full collections with a `source_index` field
        """
        electrons = ak.with_field(events.Electron, ak.local_index(events.Electron.pt), "source_index")
        muons = ak.with_field(events.Muon, ak.local_index(events.Muon.pt), "source_index")

        leptons = to_candidates(numerator_electrons(electrons), numerator_muons(muons))
        lead = lepton_at(leptons, 0)
        sublead = lepton_at(leptons, 1)

        lead_mu = ak.fill_none(np.abs(lead.pdgId) == 13, False)
        sub_mu = ak.fill_none(np.abs(sublead.pdgId) == 13, False)
        hyp_type = ak.where(
            lead_mu & sub_mu, int(HypType.MUMU),
            ak.where(~lead_mu & ~sub_mu, int(HypType.EE),
                     ak.where(lead_mu, int(HypType.MUE), int(HypType.EMU))),
        )

        hyp = {
            "lead": lead,
            "sublead": sublead,
            "hyp_type": hyp_type,
            "ele_mask": self._hyp_mask(electrons, 11, (lead, sublead)),
            "mu_mask": self._hyp_mask(muons, 13, (lead, sublead)),
        }
        return leptons, hyp, electrons, muons

    def lepton_selections(self, events, leptons, hyp, electrons, muons, is_data):
        """Per-event lepton-level selection masks keyed by selection name."""
        lead, sublead = hyp["lead"], hyp["sublead"]
        ele_mask, mu_mask = hyp["ele_mask"], hyp["mu_mask"]
        two = ak.num(leptons) >= 2

        return {
            SEL_TWO_NUMERATOR_LEPTONS: two,
            SEL_SAME_SIGN: ak.fill_none(lead.charge * sublead.charge > 0, False),
            SEL_LEAD_LEPTON_PT20: ak.fill_none(lead.pt >= CUTS["lead_lepton_pt_min"], False),
            SEL_TRIGGER: passes_trigger(events, hyp["hyp_type"], self._analysis_type, is_data),
            SEL_THREE_CHARGE: ak.all(passes_three_charge(electrons)[ele_mask], axis=1),
            SEL_NO_EXTRA_Z: ~makes_extra_z(electrons, muons, ele_mask, mu_mask),
            SEL_NO_THIRD_LEPTON: ~has_third_lepton(
                electrons, muons, CUTS["third_lepton_mu_pt_min"],
                hyp_ele_mask=ele_mask, hyp_mu_mask=mu_mask,
            ),
            SEL_EE: two & (hyp["hyp_type"] == int(HypType.EE)),
            SEL_MUMU: two & (hyp["hyp_type"] == int(HypType.MUMU)),
            SEL_EMU: two & ((hyp["hyp_type"] == int(HypType.EMU)) | (hyp["hyp_type"] == int(HypType.MUE))),
        }

    # ------------------------------------------------------------------
    # Jets and MET
    # ------------------------------------------------------------------

    def _raw_jets(self, events):
        jets = events[self._jet_type.collection]
        if self._jec is None or "rawFactor" not in jets.fields:
            return jets
        raw = 1.0 - jets.rawFactor
        jets = ak.with_field(jets, jets.pt * raw, "pt")
        return ak.with_field(jets, jets.mass * raw, "mass")

    def _nominal_strategy(self, jets):
        if self._jec is not None:
            return FactorizedCorrection.from_file(*self._jec)
        strategy = default_correction(self._jet_type)
        if isinstance(strategy, PrecomputedCorrection) and not (
            {strategy.data_field, strategy.mc_field} <= set(jets.fields)
        ):
            warn_once(
                logger,
                f"precomputed_jec::{self._jet_type.value}",
                "Jets carry no precomputed correction fields (%s, %s); using them as corrected.",
                strategy.data_field, strategy.mc_field,
            )
            return NoCorrection()
        return strategy

    def _btag_for(self, jets):
        if self._btag_wp is None:
            return None
        if self._btag_wp.field not in jets.fields:
            warn_once(
                logger,
                f"btag_missing::{self._btag_wp.field}",
                "Jets carry no '%s' discriminator; b-tag counts are set to zero.", self._btag_wp.field,
            )
            return None
        return self._btag_wp

    @staticmethod
    def _observables(njets, nbtags, ht, met, jet_pt, leptons):
        return {
            "njets": njets,
            "nbtags": nbtags,
            "ht": ht,
            "met": met,
            "lead_jet_pt": ak.fill_none(ak.firsts(jet_pt), 0.0),
            "pt_leading_lepton": ak.fill_none(lepton_at(leptons, 0).pt, 0.0),
            "pt_subleading_lepton": ak.fill_none(lepton_at(leptons, 1).pt, 0.0),
        }

    def _collection_observables(self, collection, met, leptons):
        if collection.criteria.btag is None:
            nbtags = ak.zeros_like(collection.count)
        else:
            nbtags = collection.count_btagged
        return self._observables(
            collection.count, nbtags, collection.sum_pt, met, collection.momenta().pt, leptons,
        )

    def jet_variations(self, events, electrons, muons, leptons, is_data):
        """Per-event jet/MET observables for the nominal scale and each enabled variation."""
        jets = self._raw_jets(events)
        rho = events[RHO_FIELD] if RHO_FIELD in events.fields else None
        met, met_phi = events.MET.pt, events.MET.phi

        nominal_strategy = self._nominal_strategy(jets)
        criteria = JetSelectionCriteria(btag=self._btag_for(jets))
        pipeline = JetPipeline(nominal_strategy, criteria, jet_type=self._jet_type)
        nominal = pipeline.evaluate(jets, electrons, muons, rho=rho, is_data=is_data)

        variations = {"Nominal": self._collection_observables(nominal, met, leptons)}

        if "jes" in self._enabled_systs:
            if self._jes_uncertainty is None:
                warn_once(logger, "jes_no_payload", "JES variations requested without an uncertainty payload; skipping.")
            else:
                uncertainty = get_correction(load_correction_set(self._jes_uncertainty[0]), self._jes_uncertainty[1])
                shifted = JetPipeline(UncertaintyShift(nominal_strategy, uncertainty), criteria, jet_type=self._jet_type)
                all_nominal = nominal.corrected(sort_by_pt=False)
                for label, direction in (("JESUp", SystematicDirection.UP), ("JESDown", SystematicDirection.DOWN)):
                    varied = shifted.with_criteria(direction=direction).evaluate(
                        jets, electrons, muons, rho=rho, is_data=is_data,
                    )
                    ratio = varied.corrected(sort_by_pt=False).pt / all_nominal.pt
                    varied_met, _ = type1_met(met, met_phi, all_nominal, ratio)
                    variations[label] = self._collection_observables(varied, varied_met, leptons)

        if "jer" in self._enabled_systs and not is_data:
            loose = pipeline.with_criteria(min_pt=CUTS["jer_input_pt_min"]).evaluate(
                jets, electrons, muons, rho=rho, is_data=is_data,
            )
            candidates = loose.momenta()
            if criteria.btag is not None:
                candidates = ak.with_field(candidates, loose.sorted_btag_flags, "btagged")
            seed = self._jer_seed if self._jer_seed is not None else events.event
            smeared, smeared_met, _, ht = smear_jets_met_ht(
                candidates, met, met_phi, seed, min_pt=criteria.min_pt,
            )
            if criteria.btag is not None:
                nbtags = ak.sum(smeared.btagged, axis=1)
            else:
                nbtags = ak.zeros_like(ak.num(smeared))
            variations["JER"] = self._observables(ak.num(smeared), nbtags, ht, smeared_met, smeared.pt, leptons)

        if "umet" in self._enabled_systs:
            for label, direction in (("UnclusteredMETUp", SystematicDirection.UP),
                                     ("UnclusteredMETDown", SystematicDirection.DOWN)):
                varied_met = scale_unclustered_met(met, met_phi, nominal.momenta(), leptons, direction)
                variations[label] = {**variations["Nominal"], "met": varied_met}

        return variations

    @staticmethod
    def jet_selections(observables):
        """Per-event jet/MET selection masks for one variation."""
        return {
            SEL_MIN_TWO_JETS: observables["njets"] >= 2,
            SEL_MET_GT30: observables["met"] > CUTS["met_min"],
            SEL_HT_GT80: observables["ht"] > CUTS["ht_min"],
            SEL_MIN_ONE_BTAG: observables["nbtags"] >= 1,
            SEL_MIN_TWO_BTAGS: observables["nbtags"] >= 2,
        }

    @staticmethod
    def build_selections(lepton_masks, jet_masks):
        selections = PackedSelection()
        for name, mask in {**lepton_masks, **jet_masks}.items():
            selections.add(name, mask)
        return selections

    # ------------------------------------------------------------------
    # Weights and filling
    # ------------------------------------------------------------------

    def build_event_weights(self, events, metadata, is_mc):
        """
        Minimal weights:
          - MC: genWeight * xsec * lumi / genEventSumw + optional lumi Up/Down
          - Data: unit weights
        """
        n = len(events)
        weights = Weights(n)

        if is_mc:
            lumi = float(LUMIS[metadata.get("era")])
            xsec = float(metadata.get("xsec"))
            # IMPORTANT: use signed genEventSumw (do NOT abs) for NLO samples.
            sumw = float(metadata.get("genEventSumw"))
            if sumw == 0.0:
                raise ZeroDivisionError(
                    f"genEventSumw is zero for dataset '{metadata.get('sample')}'."
                )
            weights.add("event_weight", events.genWeight * xsec * lumi * 1000.0 / sumw)

            syst_weights = {"Nominal": weights.weight()}

            if "lumi" in self._enabled_systs:
                era_key = metadata.get("era")
                delta = LUMI_UNC.get(era_key)
                if delta is None:
                    logger.warning(
                        f"No luminosity uncertainty defined for era '{era_key}'. "
                        "Skipping lumiUp/lumiDown systematics."
                    )
                else:
                    ones = np.ones(n, dtype=np.float32)
                    weights.add(
                        "lumi",
                        ones,
                        weightUp=ones * (1.0 + float(delta)),
                        weightDown=ones * (1.0 - float(delta)),
                    )
                    syst_weights["Nominal"] = weights.weight()
                    syst_weights["LumiUp"] = weights.weight(modifier="lumiUp")
                    syst_weights["LumiDown"] = weights.weight(modifier="lumiDown")
        else:  # is_data
            weights.add("data", np.ones(n, dtype=np.float32))
            syst_weights = {
                "Nominal": weights.weight(),
            }

        return weights, syst_weights

    def _fill_regions(self, output, selections, process_name, observables, syst_weights):
        for region, (channel, steps) in REGIONS.items():
            cut = selections.all(*_LEPTON_STEPS, channel, *steps)
            fill_histograms(output, region, cut, process_name, observables, syst_weights)

    def process(self, events):
        """Run analysis for one NanoEvents chunk and return a dataset-nested output dict."""
        output = self.make_output()
        metadata = events.metadata

        era = metadata.get("era")
        process_name = metadata.get("physics_group")
        dataset = metadata.get("sample")

        datatype = (metadata.get("datatype") or "").strip().lower()
        is_mc = datatype == "mc"
        is_data = not is_mc

        # Apply lumi mask (data only).
        events = self.apply_lumi_mask(events, era, is_data)

        # Build physics objects.
        leptons, hyp, electrons, muons = self.select_leptons(events)
        lepton_masks = self.lepton_selections(events, leptons, hyp, electrons, muons, is_data)
        variations = self.jet_variations(events, electrons, muons, leptons, is_data)

        weights, syst_weights = self.build_event_weights(events, metadata, is_mc)

        for label, observables in variations.items():
            selections = self.build_selections(lepton_masks, self.jet_selections(observables))
            if label == "Nominal":
                self._fill_regions(output, selections, process_name, observables, syst_weights)
                fill_cutflows(output, selections, weights)
            else:
                self._fill_regions(output, selections, process_name, observables,
                                   {label: syst_weights["Nominal"]})

        return {dataset: {**output}}

    def postprocess(self, accumulator):
        return accumulator
