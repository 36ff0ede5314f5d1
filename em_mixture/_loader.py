# em_mixture/_loader.py
"""CSV ingestion: one point per record, M numeric fields per point."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, Union

import pandas as pd
import torch

from ._errors import MalformedInputError, SizeMismatchError


def load_csv(
    path: Union[str, Path],
    dimension: Optional[int] = None,
    columns: Optional[Sequence[Union[int, str]]] = None,
    delimiter: str = ",",
    header: Optional[int] = None,
    dtype: torch.dtype = torch.float64,
) -> torch.Tensor:
    """Read a CSV file into an (N, M) tensor.

    dimension keeps the first M columns (dimension=1 reads only the first
    column). Integer columns are positions, whether or not the file has a
    header row; string columns are header names.
    """
    if dimension is not None and columns is not None:
        raise ValueError("pass either dimension or columns, not both")
    if dimension is not None and dimension <= 0:
        raise ValueError("dimension must be positive")

    try:
        df = pd.read_csv(path, sep=delimiter, header=header, skipinitialspace=True)
    except pd.errors.EmptyDataError as exc:
        raise MalformedInputError(f"{path}: no data") from exc
    except pd.errors.ParserError as exc:
        raise MalformedInputError(f"{path}: cannot parse CSV: {exc}") from exc

    if columns is not None:
        columns = list(columns)
        if all(isinstance(c, int) for c in columns):
            out_of_range = [c for c in columns if not -df.shape[1] <= c < df.shape[1]]
            if out_of_range:
                raise SizeMismatchError(
                    f"{path}: column positions {out_of_range} out of range for {df.shape[1]} columns"
                )
            df = df.iloc[:, columns]
        else:
            missing = [c for c in columns if c not in df.columns]
            if missing:
                raise SizeMismatchError(f"{path}: no columns named {missing} in {list(df.columns)}")
            df = df.loc[:, columns]
    elif dimension is not None:
        if df.shape[1] < dimension:
            raise SizeMismatchError(
                f"{path}: dimension {dimension} requested but records have {df.shape[1]} fields"
            )
        df = df.iloc[:, :dimension]

    if df.shape[0] == 0:
        raise MalformedInputError(f"{path}: no data")

    values = df.apply(pd.to_numeric, errors="coerce")
    bad = values.isna() & df.notna()
    if bad.to_numpy().any():
        row, col = next(zip(*bad.to_numpy().nonzero()))
        raise MalformedInputError(
            f"{path}: non-numeric value {df.iat[row, col]!r} at record {row}, field {col}"
        )
    if values.isna().to_numpy().any():
        row = int(values.isna().any(axis=1).to_numpy().nonzero()[0][0])
        raise MalformedInputError(f"{path}: missing field in record {row}")

    return torch.from_numpy(values.to_numpy(dtype="float64")).to(dtype)
