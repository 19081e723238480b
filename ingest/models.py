import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FileType = Literal["csv", "xml", "xlsx", "zip"]
StoreIdentifierType = Literal["filename_code", "portal_id", "national"]


class DiscoveredFile(BaseModel):
    """
    A candidate price list file found during discovery, before download.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    filename: str
    type: FileType
    size: Optional[int] = None
    last_modified: Optional[datetime.datetime] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class FetchedFile(BaseModel):
    """
    Downloaded file content, addressed by its SHA-256 hash.
    """

    model_config = ConfigDict(frozen=True)

    discovered: DiscoveredFile
    content: bytes
    hash: str


class StoreIdentifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: StoreIdentifierType
    value: str


class NormalizedRow(BaseModel):
    """
    Canonical representation of one price list row, independent of
    the chain and the file format it came from.

    Prices are in integer cents.
    """

    store_identifier: str  # Store code, portal id or national constant
    external_id: Optional[str] = None  # Chain specific product code
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    unit: Optional[str] = None  # Unit of measure as published ("kg", "kom")
    unit_quantity: Optional[str] = None  # Net quantity as published ("500g")
    price_cents: int
    discount_price_cents: Optional[int] = None
    discount_start: Optional[datetime.date] = None
    discount_end: Optional[datetime.date] = None
    barcodes: list[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    unit_price_cents: Optional[int] = None
    unit_price_base_quantity: Optional[str] = None
    unit_price_base_unit: Optional[str] = None
    lowest_price_30d_cents: Optional[int] = None  # Lowest price in last 30 days
    anchor_price_cents: Optional[int] = None  # Reference price (May 2, 2025)
    anchor_price_as_of: Optional[datetime.date] = None
    row_number: int  # 1-based, stable within one parse of one file
    raw_data: str = ""  # JSON encoded source row

    def __str__(self):
        return f"{self.name} @ {self.store_identifier} ({self.price_cents}c)"


class ParseError(BaseModel):
    row_number: Optional[int] = None
    field: Optional[str] = None
    message: str
    original_value: Optional[str] = None


class ParseWarning(BaseModel):
    row_number: Optional[int] = None
    field: Optional[str] = None
    message: str


class ParseResult(BaseModel):
    rows: list[NormalizedRow] = Field(default_factory=list)
    errors: list[ParseError] = Field(default_factory=list)
    warnings: list[ParseWarning] = Field(default_factory=list)
    total_rows: int = 0  # Source rows seen, including skipped and invalid
    valid_rows: int = 0  # Always len(rows)


class RowValidation(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
