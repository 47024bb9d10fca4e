"""
data_loader.py

Dataset loading and vertical partitioning.

- load_arff / load_csv / load_dataset: parse a file into a Dataset whose rows are
  pre-discretised ints (nominal value index or numeric bucket, -1 for missing)
- distribute_attributes: contiguous, near-equal split of the non-class attributes
- create_vertical_partition / partition_dataset: DataPartition per party
- save_arff: write a Dataset (or one party's columns) back to ARFF
- split_data: seeded train/test split
- load_values_file: tab-separated single record used for prediction
"""

import io
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from . import constants, logger, rng
from .errors import DataFormatError
from .schema import AttributeKind, AttributeMetadata, DataPartition, format_partitioning


@dataclass
class Dataset:
    name: str
    attributes: List[AttributeMetadata]
    rows: np.ndarray
    class_index: int

    def __post_init__(self):
        self.rows = np.asarray(self.rows, dtype=np.int64).reshape(-1, len(self.attributes))
        if not 0 <= self.class_index < len(self.attributes):
            raise DataFormatError(f"class index {self.class_index} out of range")
        if not self.attributes[self.class_index].is_nominal:
            raise DataFormatError(f"class attribute {self.class_attribute.name!r} must be nominal")

    @property
    def num_instances(self) -> int:
        return int(self.rows.shape[0])

    @property
    def class_attribute(self) -> AttributeMetadata:
        return self.attributes[self.class_index]

    @property
    def class_values(self) -> np.ndarray:
        return self.rows[:, self.class_index]

    @property
    def attribute_names(self) -> List[str]:
        return [a.name for a in self.attributes]

    def subset(self, row_positions, name: Optional[str] = None) -> "Dataset":
        return Dataset(name or self.name, list(self.attributes), self.rows[np.asarray(row_positions, dtype=np.int64)], self.class_index)


def discretize_numeric(values, bins: Optional[int] = None) -> np.ndarray:
    """v <= 0 -> 0, v >= 1 -> bins-1, else int(v*bins); NaN -> MISSING_VALUE."""
    if bins is None:
        bins = constants.DEFAULTS.get("NUMERIC_BINS", 10)
    v = np.asarray(values, dtype=np.float64)
    out = np.clip(np.floor(np.nan_to_num(v, nan=0.0) * bins), 0, bins - 1).astype(np.int64)
    out[np.isnan(v)] = constants.DEFAULTS.get("MISSING_VALUE", -1)
    return out


def _encode_nominal(col: pd.Series, labels: Sequence[str], attr_name: str) -> np.ndarray:
    index = {lab: i for i, lab in enumerate(labels)}
    missing = constants.DEFAULTS.get("MISSING_VALUE", -1)
    out = np.full(len(col), missing, dtype=np.int64)
    for pos, raw in enumerate(col):
        if pd.isna(raw):
            continue
        key = str(raw).strip()
        if key not in index:
            raise DataFormatError(f"value {key!r} is not declared for attribute {attr_name!r}")
        out[pos] = index[key]
    return out


# ---- ARFF ----
def _split_arff_attribute(line: str) -> Tuple[str, str]:
    body = line.strip()[len("@attribute"):].strip()
    if body.startswith(("'", '"')):
        quote = body[0]
        end = body.find(quote, 1)
        if end < 0:
            raise DataFormatError(f"unterminated attribute name: {line!r}")
        return body[1:end], body[end + 1:].strip()
    parts = body.split(None, 1)
    if len(parts) != 2:
        raise DataFormatError(f"bad @attribute line: {line!r}")
    return parts[0], parts[1].strip()


def _parse_arff_type(name: str, decl: str) -> AttributeMetadata:
    if decl.startswith("{"):
        if not decl.endswith("}"):
            raise DataFormatError(f"bad nominal declaration for {name!r}: {decl!r}")
        values = [v.strip().strip("'\"") for v in decl[1:-1].split(",") if v.strip()]
        if not values:
            raise DataFormatError(f"nominal attribute {name!r} declares no values")
        return AttributeMetadata(name, AttributeKind.NOMINAL, tuple(values))
    if decl.lower() in ("numeric", "real", "integer"):
        return AttributeMetadata(name, AttributeKind.NUMERIC)
    raise DataFormatError(f"unsupported type {decl!r} for attribute {name!r}")


def _read_arff(path: str) -> Tuple[str, List[AttributeMetadata], np.ndarray]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except OSError as e:
        raise DataFormatError(f"cannot read {path}: {e}") from e

    relation = os.path.splitext(os.path.basename(path))[0]
    attributes: List[AttributeMetadata] = []
    data_start = None
    for i, raw in enumerate(lines):
        line = raw.strip()
        if not line or line.startswith("%"):
            continue
        low = line.lower()
        if low.startswith("@relation"):
            relation = line.split(None, 1)[1].strip().strip("'\"") if len(line.split(None, 1)) > 1 else relation
        elif low.startswith("@attribute"):
            attributes.append(_parse_arff_type(*_split_arff_attribute(line)))
        elif low.startswith("@data"):
            data_start = i + 1
            break
        else:
            raise DataFormatError(f"unexpected header line in {path}: {line!r}")
    if not attributes or data_start is None:
        raise DataFormatError(f"{path} has no @attribute or @data section")

    body = "".join(l for l in lines[data_start:] if l.strip() and not l.lstrip().startswith("%"))
    if body.lstrip().startswith("{"):
        raise DataFormatError("sparse ARFF data is not supported")
    if body:
        try:
            frame = pd.read_csv(io.StringIO(body), header=None, dtype=str, quotechar="'",
                                skipinitialspace=True, na_values=["?"], keep_default_na=False)
        except pd.errors.ParserError as e:
            raise DataFormatError(f"bad @data section in {path}: {e}") from e
        if frame.shape[1] != len(attributes):
            raise DataFormatError(f"{path}: rows have {frame.shape[1]} values, header declares {len(attributes)}")
    else:
        frame = pd.DataFrame(columns=range(len(attributes)), dtype=str)

    columns = []
    for j, attr in enumerate(attributes):
        col = frame.iloc[:, j]
        if attr.is_nominal:
            columns.append(_encode_nominal(col, attr.nominal_values, attr.name))
        else:
            numeric = pd.to_numeric(col, errors="coerce")
            if (numeric.isna() & col.notna()).any():
                raise DataFormatError(f"non-numeric value in numeric attribute {attr.name!r}")
            columns.append(discretize_numeric(numeric.to_numpy(dtype=np.float64)))
    return relation, attributes, np.stack(columns, axis=1)


def load_arff(path: str, class_index: Optional[int] = None) -> Dataset:
    relation, attributes, rows = _read_arff(path)
    if class_index is None:
        class_index = len(attributes) - 1
    ds = Dataset(relation, attributes, rows, class_index)
    logger.secure_log("info", "Loaded ARFF dataset", path=path, instances=ds.num_instances, attributes=len(attributes))
    return ds


# ---- CSV ----
def load_csv(path: str, class_column: Optional[str] = None) -> Dataset:
    """
    CSV with a header row. Object columns become nominal (sorted distinct labels),
    numeric columns are discretised. The class column (last unless named) is
    always nominal.
    """
    try:
        frame = pd.read_csv(path, skipinitialspace=True, na_values=["?"])
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DataFormatError(f"cannot parse {path}: {e}") from e
    if frame.shape[1] < 2:
        raise DataFormatError(f"{path} needs at least one attribute and a class column")
    if class_column is None:
        class_column = frame.columns[-1]
    if class_column not in frame.columns:
        raise DataFormatError(f"class column {class_column!r} not found in {path}")

    attributes, columns = [], []
    for name in frame.columns:
        col = frame[name]
        numeric = pd.api.types.is_numeric_dtype(col)
        if name == class_column and numeric:
            # 0/1 style labels
            col = col.map(lambda v: v if pd.isna(v) else _number_label(v))
        if name == class_column or not numeric:
            labels = sorted({str(v).strip() for v in col.dropna()})
            attr = AttributeMetadata(str(name), AttributeKind.NOMINAL, tuple(labels))
            columns.append(_encode_nominal(col, attr.nominal_values, attr.name))
        else:
            attr = AttributeMetadata(str(name), AttributeKind.NUMERIC)
            columns.append(discretize_numeric(col.to_numpy(dtype=np.float64)))
        attributes.append(attr)

    relation = os.path.splitext(os.path.basename(path))[0]
    ds = Dataset(relation, attributes, np.stack(columns, axis=1), list(frame.columns).index(class_column))
    logger.secure_log("info", "Loaded CSV dataset", path=path, instances=ds.num_instances, attributes=len(attributes))
    return ds


def _number_label(v) -> str:
    f = float(v)
    return str(int(f)) if f.is_integer() else str(f)


def load_partition(path: str) -> DataPartition:
    """One party's ARFF file as an unbound partition; no class column is required."""
    if not os.path.exists(path):
        raise DataFormatError(f"dataset file not found: {path}")
    _, attributes, rows = _read_arff(path)
    logger.secure_log("info", "Loaded partition", path=path, instances=int(rows.shape[0]), attributes=len(attributes))
    return DataPartition(attributes=attributes, rows=rows)


def load_dataset(path: str, class_index: Optional[int] = None) -> Dataset:
    if not os.path.exists(path):
        raise DataFormatError(f"dataset file not found: {path}")
    if path.lower().endswith(".csv"):
        ds = load_csv(path)
        if class_index is not None and class_index != ds.class_index:
            ds = Dataset(ds.name, ds.attributes, ds.rows, class_index)
        return ds
    return load_arff(path, class_index)


# ---- partitioning ----
def distribute_attributes(num_attributes: int, class_index: int, num_parties: int,
                          include_class: bool = True) -> List[List[int]]:
    """
    Contiguous near-equal split of the non-class attributes; the first
    (n % parties) parties get one extra. With include_class every party also
    gets the class column (appended last).
    """
    if num_parties < 1:
        raise ValueError("num_parties must be >= 1")
    others = [j for j in range(num_attributes) if j != class_index]
    if len(others) < num_parties:
        raise DataFormatError(f"cannot spread {len(others)} attributes over {num_parties} parties")
    per, extra = divmod(len(others), num_parties)
    out, start = [], 0
    for i in range(num_parties):
        n = per + (1 if i < extra else 0)
        chunk = others[start:start + n]
        start += n
        if include_class:
            chunk = chunk + [class_index]
        out.append(chunk)
    return out


def create_vertical_partition(dataset: Dataset, indices: Sequence[int]) -> DataPartition:
    idx = [int(i) for i in indices]
    for i in idx:
        if not 0 <= i < len(dataset.attributes):
            raise DataFormatError(f"attribute index {i} out of range")
    return DataPartition(
        attributes=[dataset.attributes[i] for i in idx],
        rows=dataset.rows[:, idx],
        global_indices=idx,
        class_index=dataset.class_index,
    )


def partition_dataset(dataset: Dataset, party_ids: Sequence[str],
                      include_class: bool = True) -> Tuple[List[str], Dict[str, DataPartition]]:
    """Partitioning strings plus the DataPartition of each party."""
    split = distribute_attributes(len(dataset.attributes), dataset.class_index, len(party_ids), include_class)
    if not include_class:
        # the class column has to live somewhere; give it to the last party
        split[-1] = split[-1] + [dataset.class_index]
    assignment = list(zip(party_ids, split))
    partitions = {pid: create_vertical_partition(dataset, idx) for pid, idx in assignment}
    return format_partitioning(assignment), partitions


def save_arff(dataset: Dataset, path: str, indices: Optional[Sequence[int]] = None):
    """
    Write the given columns (all by default) as ARFF. Numeric buckets are
    written as their bucket midpoint so reloading yields the same bucket.
    """
    idx = list(range(len(dataset.attributes))) if indices is None else [int(i) for i in indices]
    bins = constants.DEFAULTS.get("NUMERIC_BINS", 10)
    lines = [f"@relation {dataset.name}", ""]
    for i in idx:
        a = dataset.attributes[i]
        if a.is_nominal:
            lines.append(f"@attribute {_arff_quote(a.name)} {{{','.join(_arff_quote(v) for v in a.nominal_values)}}}")
        else:
            lines.append(f"@attribute {_arff_quote(a.name)} numeric")
    lines += ["", "@data"]
    for row in dataset.rows:
        cells = []
        for i in idx:
            v = int(row[i])
            a = dataset.attributes[i]
            if v < 0:
                cells.append("?")
            elif a.is_nominal:
                cells.append(_arff_quote(a.nominal_values[v]))
            else:
                cells.append(f"{(v + 0.5) / bins:g}")
        lines.append(",".join(cells))
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")


def _arff_quote(s: str) -> str:
    return f"'{s}'" if any(ch in s for ch in " ,{}%'") else s


def split_data(dataset: Dataset, train_percent: Optional[float] = None,
               seed: Optional[int] = None) -> Tuple[Dataset, Dataset]:
    if train_percent is None:
        train_percent = constants.DEFAULTS.get("TRAIN_PERCENT", 66.0)
    if seed is not None:
        rng.set_seed(seed)
    perm = rng.get_numpy_rng().permutation(dataset.num_instances)
    n_train = int(round(dataset.num_instances * train_percent / 100.0))
    return (dataset.subset(perm[:n_train], dataset.name + "_train"),
            dataset.subset(perm[n_train:], dataset.name + "_test"))


# ---- single record ----
def load_values_file(path: str, attributes: Optional[Sequence[AttributeMetadata]] = None) -> Dict[str, float]:
    """
    name<TAB>value per line. Nominal labels map to their index when the schema
    is given, 't'/'f' map to 1/0, other tokens must parse as numbers.
    """
    by_name = {a.name: a for a in attributes} if attributes else {}
    features: Dict[str, float] = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except OSError as e:
        raise DataFormatError(f"cannot read {path}: {e}") from e
    for line in lines:
        if not line.strip():
            continue
        parts = line.rstrip("\n").split("\t")
        if len(parts) != 2:
            raise DataFormatError(f"invalid line format: {line.strip()!r}")
        name, token = parts[0].strip(), parts[1].strip()
        attr = by_name.get(name)
        if attr is not None and attr.is_nominal and token in attr.nominal_values:
            features[name] = attr.value_index(token)
        elif token == "t":
            features[name] = 1
        elif token == "f":
            features[name] = 0
        else:
            try:
                features[name] = float(token)
            except ValueError:
                raise DataFormatError(f"invalid feature value {token!r} for {name!r}") from None
    return features
