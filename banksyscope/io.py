import os
import json
import time
import logging
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import anndata as ad


_log = logging.getLogger("banksyscope")


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def read_expression(path: str) -> Tuple[Any, list, list]:
    """Read a cells x genes matrix; returns (matrix, cell_names, gene_names).

    `.h5ad` files keep their (possibly sparse) X; CSV files are read with the
    first column as the cell index.
    """
    if path.endswith(".h5ad"):
        adata = ad.read_h5ad(path)
        return adata.X, list(adata.obs_names), list(adata.var_names)
    df = pd.read_csv(path, index_col=0)
    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric columns in expression file {path}: {non_numeric[:5]}")
    return df.to_numpy(dtype=np.float64), [str(i) for i in df.index], [str(c) for c in df.columns]


def read_coordinates(path: str, columns: Sequence[str] = ("x", "y"), index_col: Optional[str] = None) -> pd.DataFrame:
    df = pd.read_csv(path)
    required = set(columns) | ({index_col} if index_col else set())
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"Missing columns in coordinates file {path}: {sorted(missing)}")
    if index_col:
        df = df.set_index(index_col)
        df.index = df.index.astype(str)
    return df[list(columns)]


def align_coordinates(coords: pd.DataFrame, cell_names: Sequence[str]) -> np.ndarray:
    """Order coordinate rows like the expression matrix when both carry cell IDs."""
    if isinstance(coords.index, pd.RangeIndex):
        return coords.to_numpy(dtype=np.float64)
    missing = pd.Index(cell_names).difference(coords.index)
    if len(missing):
        raise ValueError(f"{len(missing)} cells have no coordinates, e.g. {list(missing[:3])}")
    return coords.loc[list(cell_names)].to_numpy(dtype=np.float64)


def write_labels(frame: pd.DataFrame, out_dir: str, fmt: str = "csv") -> str:
    ensure_dir(out_dir)
    if str(fmt).lower() == "parquet":
        p = os.path.join(out_dir, "labels.parquet")
        frame.to_parquet(p)
    else:
        p = os.path.join(out_dir, "labels.csv")
        frame.to_csv(p, index_label="cell_id")
    _log.info("Saved labels: %s (%d cells x %d labelings)", p, frame.shape[0], frame.shape[1])
    return p


def write_comparison(frame: pd.DataFrame, out_dir: str, metric: str = "ari") -> str:
    ensure_dir(out_dir)
    p = os.path.join(out_dir, f"comparison_{metric}.csv")
    frame.to_csv(p)
    _log.info("Saved %s comparison matrix: %s", metric.upper(), p)
    return p


def save_adata(adata: ad.AnnData, out_dir: str, name: str, compression: str = "lzf") -> str:
    ensure_dir(out_dir)
    p = os.path.join(out_dir, f"{name}.h5ad")
    _log.info("Saving AnnData: %s", p)
    adata.write(p, compression=compression)
    return p


def state_path(out_dir: str) -> str:
    return os.path.join(out_dir, "run_state.json")


def save_state(out_dir: str, extra: Optional[Dict[str, Any]] = None) -> str:
    """Write run_state.json (fingerprints, outputs, failures) for later inspection."""
    state: Dict[str, Any] = {"ts": time.time()}
    if extra:
        state.update(extra)
    p = state_path(out_dir)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(state, f, ensure_ascii=False, indent=2, default=str)
    return p


def load_state(out_dir: str) -> Optional[Dict[str, Any]]:
    p = state_path(out_dir)
    if not os.path.exists(p):
        return None
    with open(p, "r", encoding="utf-8") as f:
        return json.load(f)
