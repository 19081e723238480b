import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Union

from lxml import etree  # type: ignore

from ingest.models import NormalizedRow

from .base import ParseContext, Parser

logger = logging.getLogger(__name__)

TEXT_KEYS = ("#text", "_text", "_")

ITEMS_PATH_PATTERNS = [
    "products.product",
    "items.item",
    "catalog.product",
    "data.item",
    "data.product",
    "root.product",
    "root.item",
    "Products.Product",
    "Items.Item",
]


@dataclass(frozen=True)
class StaticPath:
    """Read a value from a dot-separated path within the item."""

    path: str


@dataclass(frozen=True)
class Derived:
    """Compute a value from the whole item."""

    fn: Callable[[dict[str, Any]], Any]


FieldSource = Union[StaticPath, Derived]
FieldMapping = dict[str, FieldSource]


def field_mapping(mapping: dict[str, str | Callable]) -> FieldMapping:
    """
    Build a field mapping from plain values: strings become paths,
    callables become derived fields.
    """
    result: FieldMapping = {}
    for name, source in mapping.items():
        if isinstance(source, (StaticPath, Derived)):
            result[name] = source
        elif callable(source):
            result[name] = Derived(source)
        else:
            result[name] = StaticPath(source)
    return result


def get_path(obj: Any, path: str) -> Any:
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def text_of(value: Any) -> str | None:
    """Text content of a converted element, or None."""
    if value is None:
        return None
    if isinstance(value, dict):
        for key in TEXT_KEYS:
            if key in value:
                return str(value[key]).strip() or None
        return None
    if isinstance(value, list):
        return None
    return str(value).strip() or None


def first_of(*paths: str) -> Derived:
    """Derived field that returns the first non-empty value among paths."""

    def extract(item: dict[str, Any]) -> str | None:
        for path in paths:
            value = text_of(get_path(item, path))
            if value:
                return value
        return None

    return Derived(extract)


def _local_name(tag: str) -> str:
    return etree.QName(tag).localname


def element_to_dict(elem: Any, attribute_prefix: str = "@_") -> Any:
    """
    Convert an lxml element into nested dicts.

    Attributes are stored under prefixed keys, repeated child elements
    become lists, and text is stored under "#text" when the element
    also has attributes or children. Leaf elements become plain strings.
    """
    children = [child for child in elem if isinstance(child.tag, str)]
    text = (elem.text or "").strip()

    if not children and not elem.attrib:
        return text

    result: dict[str, Any] = {
        f"{attribute_prefix}{_local_name(key)}": value
        for key, value in elem.attrib.items()
    }
    for child in children:
        key = _local_name(child.tag)
        value = element_to_dict(child, attribute_prefix)
        if key in result:
            if not isinstance(result[key], list):
                result[key] = [result[key]]
            result[key].append(value)
        else:
            result[key] = value

    if text:
        result["#text"] = text
    return result


def parse_xml_document(
    content: bytes,
    encoding: str | None = None,
    attribute_prefix: str = "@_",
) -> dict[str, Any]:
    parser = etree.XMLParser(
        encoding=encoding,
        resolve_entities=False,
        no_network=True,
        huge_tree=True,
    )
    root = etree.fromstring(content, parser=parser)
    return {_local_name(root.tag): element_to_dict(root, attribute_prefix)}


@dataclass(frozen=True)
class XmlParserOptions:
    items_path: str = "products.product"
    field_mapping: FieldMapping | None = None
    default_store_identifier: str = ""
    encoding: str | None = None
    attribute_prefix: str = "@_"


class XmlParser(Parser):
    """
    XML parser driven by an items path and a field mapping.

    Each mapped field is either a static path within an item or a
    function deriving the value from the whole item.
    """

    FILE_TYPE = "xml"
    EXTENSIONS = (".xml",)

    def __init__(self, options: XmlParserOptions | None = None):
        self.options = options or XmlParserOptions()

    def with_options(self, **changes) -> "XmlParser":
        return XmlParser(replace(self.options, **changes))

    def parse_rows(self, ctx: ParseContext) -> tuple[list[NormalizedRow], int]:
        opts = self.options

        try:
            document = parse_xml_document(
                ctx.content, opts.encoding, opts.attribute_prefix
            )
        except (etree.XMLSyntaxError, ValueError) as e:
            ctx.add_error(
                f"XML parsing error: {e}",
                original_value=ctx.content[:200].decode("utf-8", errors="replace"),
            )
            return [], 0

        if not opts.field_mapping:
            ctx.add_error("No field mapping provided, cannot map XML items to fields")
            return [], 0

        items = get_path(document, opts.items_path)
        if items is None:
            ctx.add_warning(f'No items found at path "{opts.items_path}"')
            return [], 0

        if not isinstance(items, list):
            items = [items]

        if not items:
            ctx.add_warning("XML file contains no items")
            return [], 0

        mapping = opts.field_mapping
        rows = []

        for i, item in enumerate(items):
            if not isinstance(item, dict):
                item = {"#text": item}

            def get(name: str, item=item) -> Any:
                source = mapping.get(name)
                if source is None:
                    return None
                if isinstance(source, Derived):
                    return source.fn(item)
                value = get_path(item, source.path)
                if name == "barcodes" and isinstance(value, list):
                    return [text_of(v) for v in value]
                return text_of(value)

            row = self.process_row(
                ctx,
                get,
                i + 1,
                opts.default_store_identifier,
                self.dump_raw(item)[:2000],
            )
            if row is not None:
                rows.append(row)

        return rows, len(items)


def _find_key(obj: dict[str, Any], key: str) -> Any:
    if key in obj:
        return obj[key]
    for candidate, value in obj.items():
        if candidate.lower() == key.lower():
            return value
    return None


def detect_items_path(content: bytes) -> str | None:
    """
    Guess the items path of an XML price list.

    Tries the common layouts first, then falls back to the first
    non-empty repeated element within two levels of the root.
    """
    try:
        document = parse_xml_document(content)
    except (etree.XMLSyntaxError, ValueError):
        return None

    for pattern in ITEMS_PATH_PATTERNS:
        current: Any = document
        for part in pattern.split("."):
            if not isinstance(current, dict):
                current = None
                break
            current = _find_key(current, part)
        if current is not None:
            return pattern

    def find_list(obj: dict[str, Any], path: list[str], depth: int) -> str | None:
        if depth > 2:
            return None
        for key, value in obj.items():
            if isinstance(value, list) and value:
                return ".".join(path + [key])
            if isinstance(value, dict):
                found = find_list(value, path + [key], depth + 1)
                if found:
                    return found
        return None

    return find_list(document, [], 0)

