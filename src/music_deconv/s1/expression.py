# src/music_deconv/s1/expression.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd

from ..errors import InputError


@dataclass(frozen=True)
class ExpressionMatrix:
    """Read-only genes × samples matrix fed to deconvolution."""
    values: np.ndarray
    genes: Tuple[str, ...]
    samples: Tuple[str, ...]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def to_frame(self) -> pd.DataFrame:
        # the frame shares the read-only buffer; copy before mutating
        return pd.DataFrame(self.values, index=list(self.genes), columns=list(self.samples))


def build_expression_matrix(counts: pd.DataFrame) -> ExpressionMatrix:
    """Wrap a resolved count matrix; no numeric transformation."""
    if counts.shape[0] == 0 or counts.shape[1] == 0:
        raise InputError("Cannot build an expression matrix from an empty count matrix.")

    numeric = counts.apply(pd.to_numeric, errors="coerce")
    if numeric.isna().any(axis=None):
        raise InputError("Count matrix contains non-numeric or missing values.")

    values = numeric.to_numpy(dtype=np.float64, copy=True)
    if (values < 0).any():
        raise InputError("Count matrix contains negative values.")
    values.flags.writeable = False

    return ExpressionMatrix(
        values=values,
        genes=tuple(map(str, counts.index)),
        samples=tuple(map(str, counts.columns)),
    )
