from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from ingest.models import FileType

DerivedSource = dict[str, list[str]]
"""Derived field, e.g. {"first_of": ["store_id", "Store.Id"]}."""

MappingValue = Union[int, str, DerivedSource]


class CsvSettings(BaseModel):
    delimiter: str = ","
    encoding: str = "utf-8"
    has_header: bool = True


class XlsxSettings(BaseModel):
    sheet: Optional[Union[int, str]] = None
    has_header: bool = True
    header_row_count: int = 0


class XmlSettings(BaseModel):
    item_paths: list[str] = Field(default_factory=lambda: ["products.product"])


class XlsxLayout(BaseModel):
    """
    Alternative spreadsheet layout, selected when the filename contains
    any of the given markers.
    """

    filename_contains: list[str]
    has_header: bool = True
    header_row_count: int = 0
    column_mapping: dict[str, MappingValue]
    alternative_mapping: Optional[dict[str, MappingValue]] = None


class RateLimitSettings(BaseModel):
    requests_per_second: float = 2.0
    max_retries: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000


class DiscoveryConfig(BaseModel):
    strategy: Literal[
        "portal_links",
        "paginated_portal",
        "json_listing",
        "option_list",
        "direct_url",
        "local_mirror",
    ]
    url: Optional[str] = None
    href_pattern: Optional[str] = None  # Regex on link targets, group 1 is the filename
    value_pattern: Optional[str] = None  # Regex on <option> values
    date_pattern: Optional[str] = None  # Regex extracting the file date
    date_order: Literal["dmy", "ymd"] = "dmy"
    default_extension: Optional[str] = None
    max_pages: int = 50
    portal_url: Optional[str] = None
    directory: Optional[str] = None
    filename_pattern: Optional[str] = None  # Local mirror files, group 1 is the date
    fallback: Optional["DiscoveryConfig"] = None


DiscoveryConfig.model_rebuild()


class ChainProfile(BaseModel):
    """
    Static description of one retail chain: where its price lists live,
    how they are formatted and how rows map to normalized fields.
    """

    name: str
    base_url: str
    file_type: FileType
    supported_types: list[FileType]
    csv: Optional[CsvSettings] = None
    xlsx: Optional[XlsxSettings] = None
    xml: Optional[XmlSettings] = None
    store_resolution: Literal["filename", "portal_id", "national"] = "filename"
    national_store_id: Optional[str] = None
    store_id_patterns: list[str] = Field(default_factory=list)
    filename_prefixes: list[str] = Field(default_factory=list)
    discovery: DiscoveryConfig
    column_mapping: dict[str, MappingValue]
    alternative_mapping: Optional[dict[str, MappingValue]] = None
    layouts: list[XlsxLayout] = Field(default_factory=list)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    preprocess: Optional[str] = None
    postprocess: Optional[str] = None
    strict_gtin: bool = False
