import uproot
import logging
from pathlib import Path
from hist import Hist
from typing import Dict

logger = logging.getLogger(__name__)


def _normalize_syst_name(syst: str) -> str:
    """
    Turn 'UnclusteredMETUp' -> 'unclusteredmetup' (root-key friendly, lowercase).
    """
    return "".join(ch.lower() for ch in syst if ch.isalnum())


def _folder_and_hist_names(region: str, syst: str, hist_stem: str):
    if syst == "Nominal":
        folder = f"{region}"
        hname = f"{hist_stem}_{region}"
    else:
        norm = _normalize_syst_name(syst)
        folder = f"syst_{norm}_{region}"
        hname = f"{hist_stem}_syst_{norm}_{region}"
    return folder, hname


def _merge_cutflows(dst, src):
    """Add a (possibly nested) cutflow payload into ``dst``."""
    if isinstance(src, Hist):
        if dst is None:
            return src.copy()
        if isinstance(dst, Hist):
            dst += src
            return dst
        raise TypeError("Cutflow key has mixed types (Hist vs dict) across datasets.")
    if isinstance(src, dict):
        if dst is None or isinstance(dst, Hist):
            dst = {}
        for k, v in src.items():
            dst[k] = _merge_cutflows(dst.get(k), v)
        return dst
    return dst


def sum_cutflows(histograms):
    """Sum the ``cutflow`` payload of every dataset, per channel."""
    out = {}
    for dataset_payload in histograms.values():
        cfmap = dataset_payload.get("cutflow")
        if not isinstance(cfmap, dict):
            continue
        for k, v in cfmap.items():
            out[k] = _merge_cutflows(out.get(k), v)
    return out


def _save_cutflows(root_file, cutflow_summed: Dict[str, dict], prefix: str):
    """Recursively write all cutflow histograms under ``prefix``."""
    def _recurse(path, obj):
        if isinstance(obj, Hist):
            root_file[path] = obj
        elif isinstance(obj, dict):
            for name, child in obj.items():
                _recurse(f"{path}/{name}", child)

    _recurse(prefix, cutflow_summed)


def sum_hists(histograms):
    """Sum physics histograms of all datasets key by key."""
    if not histograms:
        raise ValueError("No histogram data provided.")

    summed = {}
    for dataset_info in histograms.values():
        for key, value in dataset_info.items():
            if not isinstance(value, Hist):
                continue
            if key in summed:
                summed[key] += value
            else:
                summed[key] = value.copy()
    return summed


def split_hists_with_syst(summed_hists, *, sum_over_process=True):
    """Split each (process, region, syst, x) histogram into 1D slices per region and syst."""
    out = {}
    for hist_name, h in summed_hists.items():
        try:
            region_ax = h.axes["region"]
            syst_ax = h.axes["syst"]
        except KeyError as e:
            logger.error("Missing expected axis in histogram '%s': %s", hist_name, e)
            continue

        for reg in list(region_ax):
            for sy in list(syst_ax):
                hh = h[{region_ax.name: reg, syst_ax.name: sy}]
                if sum_over_process and "process" in hh.axes.name:
                    hh = hh.project(*[ax.name for ax in hh.axes if ax.name != "process"])
                out[(reg, sy, hist_name)] = hh
    return out


def save_histograms(histograms, output_file):
    """Write summed histograms and cutflows of a processor run to ``output_file``."""
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    split = split_hists_with_syst(sum_hists(histograms), sum_over_process=True)
    cutflows = sum_cutflows(histograms)

    with uproot.recreate(output_file) as root_file:
        for (region, syst, hist_name), hist_obj in split.items():
            folder, hname = _folder_and_hist_names(region, syst, hist_name)
            root_file[f"/{folder}/{hname}"] = hist_obj

        _save_cutflows(root_file, cutflows, "/cutflow")

    logger.info(f"Histograms saved to {output_file}.")
    return output_file
