from __future__ import annotations

import enum
import functools
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from .config import USER_DEFAULTS
from .errors import PipelineError

logger = logging.getLogger(__name__)


class Stage(enum.IntEnum):
    START = 0
    LOADED = 1
    COUNTED = 2
    RESOLVED = 3
    MATRIX_BUILT = 4
    ESTIMATED = 5
    WRITTEN = 6
    DONE = 7


@dataclass
class PipelineContext:
    """Everything one run needs, handed from stage to stage."""
    sce_file: str
    bulk_dir: str
    tx2gene: str
    outdir: str = "."
    dataset: str = USER_DEFAULTS["dataset"]
    cluster_col: str = USER_DEFAULTS["cluster_col"]
    sample_col: str = USER_DEFAULTS["sample_col"]
    abundance_suffix: str = USER_DEFAULTS["abundance_suffix"]
    legacy_drop_first_row: bool = USER_DEFAULTS["legacy_drop_first_row"]
    verbose: bool = USER_DEFAULTS["verbose"]
    lookup: Optional[Callable[[List[str], str], pd.DataFrame]] = None

    stage: Stage = Stage.START
    reference: Any = None
    counts: Optional[pd.DataFrame] = None
    resolved: Optional[pd.DataFrame] = None
    bulk: Any = None
    music: Any = None
    proportions: Optional[pd.DataFrame] = None
    outputs: Dict[str, str] = field(default_factory=dict)

    def out_path(self, name: str) -> str:
        return os.path.join(self.outdir, name)


def _stage(before: Stage, after: Stage):
    """Run the wrapped step only from `before`; advance to `after` on success."""
    def deco(fn: Callable[[PipelineContext], PipelineContext]):
        @functools.wraps(fn)
        def wrapper(ctx: PipelineContext) -> PipelineContext:
            if ctx.stage != before:
                raise PipelineError(
                    f"{fn.__name__} expects stage {before.name}, pipeline is at {ctx.stage.name}"
                )
            ctx = fn(ctx)
            ctx.stage = after
            logger.debug(f"[PIPE] {before.name} -> {after.name}")
            return ctx
        return wrapper
    return deco


@_stage(Stage.START, Stage.LOADED)
def load_reference(ctx: PipelineContext) -> PipelineContext:
    from .adata_utils import read_reference  # import late
    ctx.reference = read_reference(ctx.sce_file, cluster_col=ctx.cluster_col, sample_col=ctx.sample_col)
    return ctx


@_stage(Stage.LOADED, Stage.COUNTED)
def count_transcripts(ctx: PipelineContext) -> PipelineContext:
    from .s1.tximport import DEF_COUNTS_NAME, convert_to_counts
    path = ctx.out_path(USER_DEFAULTS.get("counts_name", DEF_COUNTS_NAME))
    ctx.counts = convert_to_counts(ctx.tx2gene, ctx.bulk_dir, out_path=path, suffix=ctx.abundance_suffix)
    ctx.outputs["counts"] = path
    return ctx


@_stage(Stage.COUNTED, Stage.RESOLVED)
def resolve_gene_names(ctx: PipelineContext) -> PipelineContext:
    from .s1.mapping import aggregate_counts_by_gene_name
    ctx.resolved = aggregate_counts_by_gene_name(
        ctx.counts,
        dataset=ctx.dataset,
        lookup=ctx.lookup,
        drop_first_row=ctx.legacy_drop_first_row,
    )
    ctx.counts = None
    return ctx


@_stage(Stage.RESOLVED, Stage.MATRIX_BUILT)
def build_bulk_matrix(ctx: PipelineContext) -> PipelineContext:
    from .s1.expression import build_expression_matrix
    ctx.bulk = build_expression_matrix(ctx.resolved)
    ctx.resolved = None
    return ctx


@_stage(Stage.MATRIX_BUILT, Stage.ESTIMATED)
def estimate(ctx: PipelineContext) -> PipelineContext:
    from .s2.deconv import proportions_from_result, run_music
    ctx.music = run_music(
        ctx.bulk,
        ctx.reference,
        clusters=ctx.cluster_col,
        samples=ctx.sample_col,
        select_ct=None,
        verbose=ctx.verbose,
    )
    ctx.proportions = proportions_from_result(ctx.music)
    return ctx


@_stage(Stage.ESTIMATED, Stage.WRITTEN)
def write_outputs(ctx: PipelineContext) -> PipelineContext:
    from .s2.deconv import DEF_PROPORTIONS_NAME, write_proportions, write_summary
    props = ctx.out_path(USER_DEFAULTS.get("proportions_name", DEF_PROPORTIONS_NAME))
    ctx.outputs["est_cell_types"] = write_proportions(ctx.proportions, props)

    summary = ctx.out_path(USER_DEFAULTS.get("summary_name", "music_summary.json"))
    ctx.outputs["summary"] = write_summary(
        ctx.music,
        summary,
        sce_file=ctx.sce_file,
        bulk_dir=ctx.bulk_dir,
        tx2gene=ctx.tx2gene,
        dataset=ctx.dataset,
        n_bulk_genes=int(ctx.bulk.shape[0]),
        files={k: v for k, v in ctx.outputs.items()},
    )
    return ctx


@_stage(Stage.WRITTEN, Stage.DONE)
def finish(ctx: PipelineContext) -> PipelineContext:
    ctx.reference = None
    ctx.bulk = None
    return ctx


PIPELINE = (
    load_reference,
    count_transcripts,
    resolve_gene_names,
    build_bulk_matrix,
    estimate,
    write_outputs,
    finish,
)


def run_pipeline(ctx: PipelineContext) -> PipelineContext:
    """Run every stage in order; the first error stops the run."""
    os.makedirs(ctx.outdir, exist_ok=True)
    for step in PIPELINE:
        ctx = step(ctx)
    return ctx
