"""I/O utilities: matrix and label tables, model bundles, structured logs."""

from .logging import (
    get_timestamped_log_path,
    log_json_records,
    log_yaml,
)
from .matrix import (
    ensure_output_dir,
    read_expression_matrix,
    read_labels,
    write_table,
)
from .model_store import (
    load_bundle,
    save_bundle,
)

__all__ = [
    "get_timestamped_log_path",
    "log_json_records",
    "log_yaml",
    "ensure_output_dir",
    "read_expression_matrix",
    "read_labels",
    "write_table",
    "load_bundle",
    "save_bundle",
]
