"""Lightweight configuration for the same-sign dilepton analysis.

Keep this module dependency-free so it can be shipped to Dask workers cheaply.
"""

# Integrated luminosities (fb^-1)
LUMIS = {
    "Run2011": 4.98,
    "Run2012": 19.5,
}

# Systematic uncertainties: integrated luminosity fractional uncertainty
LUMI_UNC = {
    "Run2011": 0.022,
    "Run2012": 0.044,
}

# Golden JSONs (certified lumi sections), overridable with $LUMI_JSON
LUMI_JSONS = {
    "Run2011": "data/lumis/Run2011/Cert_160404-180252_7TeV_ReRecoNov08_Collisions11_JSON.txt",
    "Run2012": "data/lumis/Run2012/Cert_190456-208686_8TeV_22Jan2013ReReco_Collisions12_JSON.txt",
}

# b-tag operating point used for the signal regions
DEFAULT_BTAG = "CSVM"

# --- Jet side-table field names ----------------------------------------------
#
# Field names carried by each raw jet record.  The precomputed correction
# factors are chosen by the data/simulation flag.
JET_FIELDS = {
    "area": "area",
    "corr_data": "corrL1FastL2L3residual",
    "corr_mc": "corrL1FastL2L3",
    "corr": "corr",
    "mc_algo": "mcFlavorAlgo",
    "mc_phys": "mcFlavorPhys",
    "chf": "chHEF",
    "nhf": "neHEF",
    "cef": "chEmEF",
    "nef": "neEmEF",
}

# --- Photon side-table field names ----------------------------------------------
#
# Supercluster quantities are carried on the photon record; ``sc_index`` is -1
# for photons without a matched supercluster.
PHOTON_FIELDS = {
    "hoe": "hoe",
    "sieie": "sieie",
    "pixel_seed": "pixelSeed",
    "ecal_iso03": "ecalIso03",
    "hcal_iso03": "hcalIso03",
    "ecal_iso04": "ecalIso04",
    "hcal_iso04": "hcalIso04",
    "trk_iso_hollow04": "trkIsoHollow04",
    "sc_index": "scIndex",
    "sc_e1x3": "scE1x3",
    "sc_e3x1": "scE3x1",
    "sc_emax": "scEMax",
    "sc_sipip": "scSigmaIPhiIPhi",
}

# Vgamma 2011 photon ID: sigmaIetaIeta ceiling and isolation ceilings
# (constant, ET coefficient, rho coefficient) per detector region.
VGAMMA_2011_CUTS = {
    "barrel": {
        "sieie_max": 0.011,
        "trk_iso": (2.0, 0.0010, 0.0167),
        "ecal_iso": (4.2, 0.0060, 0.1830),
        "hcal_iso": (2.2, 0.0025, 0.0620),
    },
    "endcap": {
        "sieie_max": 0.03,
        "trk_iso": (2.0, 0.0010, 0.0320),
        "ecal_iso": (4.2, 0.0060, 0.0900),
        "hcal_iso": (2.2, 0.0025, 0.1800),
    },
}

# Event-level pile-up density used by the factorized corrector.
RHO_FIELD = "fixedGridRhoFastjetAll"

# Named inputs expected by factorized corrections and uncertainties.
JEC_INPUTS = ("JetA", "JetEta", "JetPt", "Rho")
JEC_UNC_INPUTS = ("JetEta", "JetPt")

# Uncertainty evaluators are only defined inside this |eta| range.
JEC_UNC_ETA_MAX = 5.1999

# --- b-tag operating points ----------------------------------------------------
#
# name -> (discriminator field, threshold); a jet is tagged when disc > threshold.
BTAG_WORKING_POINTS = {
    "CSVL": ("btagCSV", 0.244),
    "CSVM": ("btagCSV", 0.679),
    "CSVT": ("btagCSV", 0.898),
    "JPL": ("btagJP", 0.275),
    "JPM": ("btagJP", 0.545),
    "JPT": ("btagJP", 0.790),
}

# --- Jet energy resolution -----------------------------------------------------
#
# Simulated resolution: (|eta| upper edge, N, S, C, m) with
# sigma(pt) = sqrt(N*|N| + S^2 * pt^(m+1) + C^2 * pt^2).  Zero beyond the last bin.
JER_RESOLUTION_BINS = (
    (0.5, 3.96859, 0.18348, 0.0, 0.62627),
    (1.0, 3.55226, 0.24026, 0.0, 0.52571),
    (1.5, 4.54826, 0.22652, 0.0, 0.58963),
    (2.0, 4.62622, 0.23664, 0.0, 0.48738),
    (2.5, 2.53324, 0.34306, 0.0, 0.28662),
    (3.0, -3.33814, 0.73360, 0.0, 0.08264),
    (5.0, 2.95397, 0.11619, 0.0, 0.96086),
)

# Data/simulation resolution ratio: (|eta| upper edge, scale); last entry covers the rest.
JER_SCALE_BINS = (
    (0.5, 1.052),
    (1.1, 1.057),
    (1.7, 1.096),
    (2.3, 1.134),
    (float("inf"), 1.288),
)

# --- Fake rates ------------------------------------------------------------------
#
# version -> (probability histogram, error histogram).  Both are (|eta|, pt) maps.
FAKE_RATE_HISTOGRAMS = {
    "mu_v1": ("QCD30_mu_FR_etavspt", "QCD30_mu_FRErr_etavspt"),
    "el_v1": ("QCD30_el_IDn_ISO_04_FRptvseta", "QCD30_el_IDn_ISO_04_FRErrptvseta"),
    "el_v2": ("QCD30_el_IDn_ISO_01_FRptvseta", "QCD30_el_IDn_ISO_01_FRErrptvseta"),
    "el_v3": ("QCD30_el_IDy_ISO_04_FRptvseta", "QCD30_el_IDy_ISO_04_FRErrptvseta"),
}

# Fake-rate probabilities are frozen just below the last pt edge.
FAKE_RATE_PT_EPSILON = 0.001

# --- Triggers --------------------------------------------------------------------
#
# Unprescaled dilepton paths per analysis type and flavour.  Entries are
# path prefixes; any version suffix (``_v3`` ...) is accepted.
TRIGGER_PATHS = {
    "high_pt": {
        "mm": ["HLT_Mu17_Mu8_v"],
        "em": [
            "HLT_Mu17_Ele8_CaloIdT_CaloIsoVL_TrkIdVL_TrkIsoVL_v",
            "HLT_Mu8_Ele17_CaloIdT_CaloIsoVL_TrkIdVL_TrkIsoVL_v",
        ],
        "ee": ["HLT_Ele17_CaloIdT_CaloIsoVL_TrkIdVL_TrkIsoVL_Ele8_CaloIdT_CaloIsoVL_TrkIdVL_TrkIsoVL_v"],
    },
    "low_pt": {
        "mm": ["HLT_DoubleMu8_Mass8_PFNoPUHT175_v", "HLT_DoubleMu8_Mass8_PFHT175_v"],
        "em": [
            "HLT_Mu8_Ele8_CaloIdT_TrkIdVL_Mass8_PFNoPUHT175_v",
            "HLT_Mu8_Ele8_CaloIdT_TrkIdVL_Mass8_PFHT175_v",
        ],
        "ee": [
            "HLT_DoubleEle8_CaloIdT_TrkIdVL_Mass8_PFNoPUHT175_v",
            "HLT_DoubleEle8_CaloIdT_TrkIdVL_Mass8_PFHT175_v",
        ],
    },
    "very_low_pt": {
        "mm": [
            "HLT_DoubleRelIso1p0Mu5_Mass8_PFNoPUHT175_v",
            "HLT_DoubleRelIso1p0Mu5_Mass8_PFHT175_v",
        ],
        "em": [
            "HLT_RelIso1p0Mu5_Ele8_CaloIdT_TrkIdVL_Mass8_PFNoPUHT175_v",
            "HLT_RelIso1p0Mu5_Ele8_CaloIdT_TrkIdVL_Mass8_PFHT175_v",
        ],
        "ee": [
            "HLT_DoubleEle8_CaloIdT_TrkIdVL_Mass8_PFNoPUHT175_v",
            "HLT_DoubleEle8_CaloIdT_TrkIdVL_Mass8_PFHT175_v",
        ],
    },
}

# --- Selection name constants (single source of truth for string keys) ---------
#
# Used for PackedSelection.add() names, region definitions, and cutflow bookkeeping.
SEL_TWO_NUMERATOR_LEPTONS = "two_numerator_leptons"
SEL_SAME_SIGN = "same_sign"
SEL_LEAD_LEPTON_PT20 = "lead_lepton_pt20"
SEL_TRIGGER = "trigger"
SEL_THREE_CHARGE = "three_charge"
SEL_NO_EXTRA_Z = "no_extra_z"
SEL_NO_THIRD_LEPTON = "no_third_lepton"
SEL_MIN_TWO_JETS = "min_two_jets"
SEL_MIN_ONE_BTAG = "min_one_btag"
SEL_MIN_TWO_BTAGS = "min_two_btags"
SEL_MET_GT30 = "met_gt30"
SEL_HT_GT80 = "ht_gt80"

SEL_EE = "ee"
SEL_MUMU = "mumu"
SEL_EMU = "emu"

# --- Physics thresholds (single source of truth for analysis cuts) -------------
CUTS = {
    # jets
    "jet_pt_min": 40.0,
    "jet_eta_max": 2.4,
    "jet_lepton_dr": 0.4,
    "jet_ele_pt_min": 20.0,
    "jet_mu_pt_min": 20.0,
    "jer_jet_pt_min": 40.0,
    "jer_input_pt_min": 15.0,
    "unclustered_met_fraction": 0.10,
    "type1_jet_pt_min": 10.0,
    # leptons
    "lepton_pt_min": 20.0,
    "lead_lepton_pt_min": 20.0,
    "lepton_eta_max": 2.4,
    "ele_d0_max": 0.01,
    "mu_d0_max": 0.005,
    "ele_iso_max": 0.09,
    "mu_iso_max": 0.10,
    "ele_fo_iso_max": 0.60,
    "mu_fo_iso_max": 0.40,
    "mu_fo_d0_max": 0.2,
    "ele_hoe_max_barrel": 0.10,
    "ele_hoe_max_endcap": 0.075,
    "barrel_eta_max": 1.4442,
    "endcap_eta_min": 1.566,
    "third_lepton_iso_max": 0.15,
    "third_mu_d0_max": 0.02,
    "third_lepton_ele_mu_dr": 0.1,
    "third_lepton_mu_pt_min": 10.0,
    "extra_z_lepton_pt_min": 10.0,
    "extra_z_iso_max": 0.2,
    "z_mass": 91.0,
    "z_window": 15.0,
    "gamma_star_lepton_pt_min": 5.0,
    "gamma_star_mass_max": 12.0,
    # electron cut-based ID levels
    "ele_id_veto": 1,
    "ele_id_loose": 2,
    "ele_id_medium": 3,
    "ele_id_tight": 4,
    # photons
    "photon_yuri_pt_min": 10.0,
    "photon_yuri_eta_max": 1.479,
    "photon_yuri_hoe_max": 0.05,
    "photon_yuri_sieie_max": 0.013,
    "photon_hollow_dr_inner": 0.05,
    "photon_hollow_dr_outer": 0.4,
    "photon_spike_r4_max": 0.05,
    "em_object_pt_min": 22.0,
    "em_object_2012_pt_min": 20.0,
    "em_object_hoe_max": 0.1,
    "em_jet_pt_min": 10.0,
    "em_jet_eta_max": 3.0,
    "em_jet_dr_max": 0.3,
    "em_neutral_em_frac_min": 0.7,
    "vgamma_hoe_max": 0.05,
    "vgamma_barrel_eta_max": 1.479,
    "vgamma_spike_min": 0.001,
    # event
    "met_min": 30.0,
    "ht_min": 80.0,
}
