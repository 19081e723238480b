import re
from typing import Callable

from ingest.models import ParseResult

PreprocessHook = Callable[[bytes, str | None], tuple[bytes, str | None]]
PostprocessHook = Callable[[ParseResult], ParseResult]

GTIN_SEPARATORS = re.compile(r"[;|]")


def leading_comma_decimals(content: bytes, encoding: str | None) -> tuple[bytes, str | None]:
    """
    Add the missing leading zero to decimals like ",69".

    The content is decoded with the chain encoding and re-encoded as
    UTF-8, so the returned encoding is always "utf-8".
    """
    text = content.decode(encoding or "utf-8", errors="replace")
    text = re.sub(r";,(\d)", r";0,\1", text)
    text = re.sub(r"^,(\d)", r"0,\1", text, flags=re.MULTILINE)
    text = re.sub(r'",(\d)', r'"0,\1', text)
    return text.encode("utf-8"), "utf-8"


def split_multi_gtin(result: ParseResult) -> ParseResult:
    """Split a single barcode cell listing several GTINs ("a;b" or "a|b")."""
    rows = []
    for row in result.rows:
        if len(row.barcodes) == 1 and GTIN_SEPARATORS.search(row.barcodes[0]):
            gtins = [g.strip() for g in GTIN_SEPARATORS.split(row.barcodes[0])]
            row = row.model_copy(update={"barcodes": [g for g in gtins if g]})
        rows.append(row)
    return result.model_copy(update={"rows": rows})


PREPROCESS_HOOKS: dict[str, PreprocessHook] = {
    "leading_comma_decimals": leading_comma_decimals,
}

POSTPROCESS_HOOKS: dict[str, PostprocessHook] = {
    "split_multi_gtin": split_multi_gtin,
}


def get_preprocess_hook(name: str | None) -> PreprocessHook | None:
    if name is None:
        return None
    if name not in PREPROCESS_HOOKS:
        raise ValueError(f"Unknown preprocess hook: {name}")
    return PREPROCESS_HOOKS[name]


def get_postprocess_hook(name: str | None) -> PostprocessHook | None:
    if name is None:
        return None
    if name not in POSTPROCESS_HOOKS:
        raise ValueError(f"Unknown postprocess hook: {name}")
    return POSTPROCESS_HOOKS[name]
