# src/music_deconv/cli.py
from __future__ import annotations

import argparse
import functools
import logging
import sys

from .config import SPECIES_DATASETS, USER_DEFAULTS, resolve_paths
from .errors import PipelineError
from .utils import probe_biomart, probe_dependencies


def _D(key: str, fallback):
    """pull from USER_DEFAULTS with a safe fallback"""
    return USER_DEFAULTS.get(key, fallback)


def _parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        "music-deconv",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        description="kallisto abundances → gene counts → MuSiC cell-type proportions.",
    )

    # ---------- Inputs ----------
    ap.add_argument("-s", "--sce", dest="sce", required=True,
                    help="path to the single-cell reference (.h5ad)")
    ap.add_argument("-b", "--bulk", dest="bulk", required=True,
                    help="path to the directory containing the bulk kallisto outputs")
    ap.add_argument("--tx2gene", default=_D("tx2gene", "transcripts2genes.tsv"),
                    help="tab-delimited transcript → gene table")
    ap.add_argument("--abundance_suffix", default=_D("abundance_suffix", "abundance.tsv"))

    # ---------- Gene symbols ----------
    ap.add_argument("--dataset", default=_D("dataset", SPECIES_DATASETS["mouse"]),
                    help="Ensembl BioMart dataset (e.g. " + ", ".join(SPECIES_DATASETS.values()) + ")")
    ap.add_argument("--gene_map", default=_D("gene_map", ""),
                    help="local gene id → symbol TSV; skips the BioMart query")
    ap.add_argument("--biomart_host", default=_D("biomart_host", ""))
    ap.add_argument("--legacy_drop_first_row", action="store_true",
                    default=_D("legacy_drop_first_row", False),
                    help="drop the first row after symbol aggregation instead of the empty-symbol row")

    # ---------- Reference labels ----------
    ap.add_argument("--cluster_col", default=_D("cluster_col", "celltypes"))
    ap.add_argument("--sample_col",  default=_D("sample_col", "sampleIDs"))

    # ---------- Outputs / misc ----------
    ap.add_argument("--outdir", default=_D("outdir", "."))
    ap.add_argument("--skip_probe", action="store_true", help="skip the BioMart reachability check")
    ap.add_argument("--quiet", action="store_true", help="only log warnings and errors")

    return ap.parse_args(argv)


def main(argv=None) -> int:
    a = _parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING if a.quiet else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    paths = resolve_paths(a)
    try:
        probe_dependencies()

        from .drivers import PipelineContext, run_pipeline  # import late
        from .s1.mapping import lookup_from_table, query_biomart

        lookup = None
        if a.gene_map:
            lookup = lookup_from_table(paths["gene_map"])
        else:
            host = a.biomart_host or USER_DEFAULTS["biomart_host"]
            if not a.skip_probe:
                probe_biomart(host)
            lookup = functools.partial(
                query_biomart,
                host=host,
                timeout=_D("biomart_timeout", 600),
                batch_size=_D("biomart_batch_size", 500),
            )

        ctx = PipelineContext(
            sce_file=paths["sce"],
            bulk_dir=paths["bulk"],
            tx2gene=paths["tx2gene"],
            outdir=paths["outdir"] or ".",
            dataset=a.dataset,
            cluster_col=a.cluster_col,
            sample_col=a.sample_col,
            abundance_suffix=a.abundance_suffix,
            legacy_drop_first_row=a.legacy_drop_first_row,
            verbose=not a.quiet,
            lookup=lookup,
        )
        run_pipeline(ctx)
    except PipelineError as e:
        print(f"[ERROR] {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("[ERROR] interrupted", file=sys.stderr)
        return 130

    print("Done!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
