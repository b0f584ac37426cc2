"""
Layer-by-layer summary of a network tree.

Every layer returns `SummaryRecord`s from its `summarize` method; this module only
turns those records into text.
"""
from dataclasses import dataclass

RULE = "_" * 103


@dataclass(frozen=True)
class SummaryRecord:
    type_name: str
    shapes: tuple
    path: str
    composite: bool = False
    detail: str = ""


def format_shape(shape):
    return "[ " + " ".join(f"{dim:5d}" for dim in shape) + " ]"


def format_record(record):
    if record.composite:
        header = f"{record.type_name}: {record.detail}".rstrip()
        return f"{header:<72}{record.path}\n-------------"
    shapes = "  ".join(format_shape(shape) for shape in record.shapes)
    return f"{record.type_name:<32}{shapes:<40}{record.path}\n{RULE}"


def format_summary(records):
    """
    Render summary records as a text table.

    Args:
        records (list): SummaryRecords in traversal order

    Returns:
        str: The table, one block per record
    """
    lines = [
        RULE,
        f"{'Layer (type)':<32}{'Parameter shapes':<40}Scope",
        "=" * 103,
    ]
    lines.extend(format_record(record) for record in records)
    return "\n".join(lines)


def print_summary(model, scope="model"):
    """Print the summary table of `model`."""
    print(format_summary(model.summarize(scope)))
    print()
