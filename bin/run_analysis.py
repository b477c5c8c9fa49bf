import os
os.environ.setdefault("NUMEXPR_MAX_THREADS", "1")

import warnings
warnings.filterwarnings("ignore", category=FutureWarning, module="coffea.*")
warnings.filterwarnings("ignore", category=RuntimeWarning, message="Missing cross-reference", module="coffea.*")
import argparse
import time
import logging
from contextlib import contextmanager, nullcontext
from pathlib import Path

from sscoffea.cli_utils import list_eras, load_and_select_fileset
from sscoffea.jets import BtagType, JetType
from sscoffea.triggers import AnalysisType
from sscoffea.analyzer import SUPPORTED_SYSTS

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def validate_arguments(args):
    """Check CLI argument combinations are valid before running."""
    if args.workers < 1:
        raise ValueError("--workers must be a positive integer")
    if args.chunksize < 1:
        raise ValueError("--chunksize must be a positive integer")
    if args.jer_seed is not None and args.jer_seed < 0:
        raise ValueError("--jer-seed must be >= 0")
    if "jes" in args.systs and args.jes_uncertainty is None:
        raise ValueError("--systs jes requires --jes-uncertainty PATH NAME")


def _output_path(args):
    if args.output is not None:
        return args.output
    stem = f"SSAnalyzer_{args.sample}" if args.sample else "SSAnalyzer"
    if args.name:
        stem = f"{stem}_{args.name}"
    return Path("SS_Plotter") / "rootfiles" / args.era / f"{stem}.root"


@contextmanager
def _local_cluster(*, n_workers, threads_per_worker):
    """Set up a local Dask cluster, yield client, clean up on exit."""
    from dask.distributed import Client, LocalCluster

    cluster = LocalCluster(n_workers=n_workers, threads_per_worker=threads_per_worker)
    client = Client(cluster)
    try:
        yield client
    finally:
        client.close()
        cluster.close()


def _executor(args, client):
    from coffea.processor import DaskExecutor, FuturesExecutor, IterativeExecutor

    if args.executor == "iterative":
        return IterativeExecutor()
    if args.executor == "futures":
        return FuturesExecutor(workers=args.workers)
    return DaskExecutor(client=client, compression=None, retries=3)


def _process_fileset(args, fileset, *, client=None):
    """Run the processor over a fileset and return histograms."""
    from coffea.nanoevents import NanoAODSchema
    from coffea.processor import Runner
    from sscoffea.analyzer import SameSignAnalysis

    NanoAODSchema.warn_missing_crossrefs = False

    processor = SameSignAnalysis(
        enabled_systs=args.systs,
        analysis_type=args.analysis_type,
        btag=args.btag,
        jet_type=args.jet_type,
        jec=args.jec,
        jes_uncertainty=args.jes_uncertainty,
        jer_seed=args.jer_seed,
    )
    run = Runner(
        executor=_executor(args, client),
        chunksize=args.chunksize,
        maxchunks=args.maxchunks,
        skipbadfiles=True,
        savemetrics=True,
        schema=NanoAODSchema,
    )

    logging.info("***PREPROCESSING***")
    preproc = run.preprocess(fileset=fileset, treename="Events")
    logging.info("Preprocessing completed")

    logging.info("***PROCESSING***")
    hists, _ = run(preproc, treename="Events", processor_instance=processor)
    logging.info("Processing completed")
    return hists


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Processing script for the same-sign dilepton analysis.")
    parser.add_argument("era", type=str, choices=list_eras(), help="Data-taking period to analyze.")
    parser.add_argument("fileset", type=Path, help="Fileset JSON ({dataset: {files, metadata}}).")
    optional = parser.add_argument_group("Optional arguments")
    optional.add_argument("--sample", type=str, default=None, help="Only run datasets with this metadata.physics_group.")
    optional.add_argument("--output", type=Path, default=None, help="Output ROOT file (default: SS_Plotter/rootfiles/<era>/SSAnalyzer_<sample>.root).")
    optional.add_argument("--name", type=str, default=None, help="Append to the output ROOT filename.")
    optional.add_argument("--debug", action='store_true', help="Debug mode (don't save histograms)")
    optional.add_argument("--executor", type=str, default="iterative", choices=["iterative", "futures", "dask"], help="Coffea executor (default: iterative).")
    optional.add_argument("--workers", type=int, default=4, help="Workers for the futures/dask executors (default: 4).")
    optional.add_argument("--chunksize", type=int, default=250_000, help="Number of events per processing chunk (default: 250000).")
    optional.add_argument("--maxchunks", type=int, default=None, help="Max chunks per dataset file (default: all). Use 1 for quick testing.")
    optional.add_argument("--maxfiles", type=int, default=None, help="Max files per dataset (default: all).")
    optional.add_argument("--systs", nargs="*", default=[], choices=list(SUPPORTED_SYSTS), help="Enable systematic variations.")
    optional.add_argument("--analysis-type", type=str, default=AnalysisType.HIGH_PT.value, choices=[a.value for a in AnalysisType], help="Trigger set (default: high_pt).")
    optional.add_argument("--btag", type=str, default="CSVM", choices=[b.value for b in BtagType], help="b-tag operating point (default: CSVM).")
    optional.add_argument("--jet-type", type=str, default=JetType.PF_CORR.value, choices=[t.value for t in JetType], help="Raw jet collection and its stored correction.")
    optional.add_argument("--jec", nargs=2, metavar=("PATH", "NAME"), default=None, help="correctionlib payload and correction applied on the fly.")
    optional.add_argument("--jes-uncertainty", nargs=2, metavar=("PATH", "NAME"), default=None, help="correctionlib payload and JES uncertainty.")
    optional.add_argument("--jer-seed", type=int, default=None, help="Fixed JER smearing seed (default: per-event event number).")
    args = parser.parse_args()

    validate_arguments(args)
    logging.info(f"Analyzing {args.era} - {args.sample or 'all'} events")

    fileset = load_and_select_fileset(
        filepath=args.fileset,
        desired_process=args.sample,
        maxfiles=args.maxfiles,
    )
    n_files = sum(len(ds.get("files", {})) for ds in fileset.values())
    logging.info("Selected %d dataset(s), %d file(s) after filtering.", len(fileset), n_files)

    t0 = time.monotonic()
    cluster = (
        _local_cluster(n_workers=args.workers, threads_per_worker=1)
        if args.executor == "dask" else nullcontext()
    )
    with cluster as client:
        hists = _process_fileset(args, fileset, client=client)

    if not args.debug:
        from sscoffea.save_hists import save_histograms
        save_histograms(hists, _output_path(args))

    exec_time = time.monotonic() - t0
    logging.info(f"Execution took {exec_time/60:.2f} minutes")
