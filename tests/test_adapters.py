"""Tests for chain profiles, adapters, hooks and discovery strategies."""

import datetime

import httpx
import pytest

from ingest.chains.adapter import ChainAdapter, to_field_mapping
from ingest.chains.hooks import (
    get_postprocess_hook,
    get_preprocess_hook,
    leading_comma_decimals,
    split_multi_gtin,
)
from ingest.chains.registry import get_adapter, get_chains, get_profile
from ingest.models import DiscoveredFile, NormalizedRow, ParseError, ParseResult
from ingest.parsers.base import ParseOptions
from ingest.parsers.xml_parser import Derived


def make_row(**kwargs) -> NormalizedRow:
    data = {
        "store_identifier": "S1",
        "name": "Kruh",
        "price_cents": 199,
        "row_number": 1,
        **kwargs,
    }
    return NormalizedRow(**data)


class TestRegistry:
    """Tests for the chain registry."""

    def test_supported_chains(self) -> None:
        """Test that every profile in chains.json is loaded."""
        chains = get_chains()
        for slug in ["konzum", "lidl", "plodine", "studenac", "dm", "metro"]:
            assert slug in chains

    def test_unknown_chain(self) -> None:
        """Test that unknown chains are rejected."""
        with pytest.raises(ValueError, match="Unknown retail chain"):
            get_profile("nonexistent")
        with pytest.raises(ValueError):
            get_adapter("nonexistent")

    def test_profiles_are_consistent(self) -> None:
        """Test that every profile maps the required fields."""
        for slug in get_chains():
            profile = get_profile(slug)
            assert profile.file_type in profile.supported_types
            assert "name" in profile.column_mapping
            assert "price" in profile.column_mapping


class TestChainAdapter:
    """Tests for ChainAdapter parsing and store resolution."""

    def test_csv_alternative_mapping_fallback(self, offline_adapter) -> None:
        """Test that the alternative mapping is used when the primary one fails."""
        adapter = offline_adapter("konzum")
        content = b"Code,Name,Price,Barcode\nA1,Kruh,1.99,3850001000001\n"

        result = adapter.parse(content, "SUPERMARKET,ZAGREB,0604,Ilica 1,2025-05-15.csv")

        assert result.valid_rows == 1
        row = result.rows[0]
        assert row.external_id == "A1"
        assert row.name == "Kruh"
        assert row.price_cents == 199
        assert row.store_identifier == "0604"

    def test_primary_mapping_kept_when_valid(self, offline_adapter) -> None:
        """Test that a working primary mapping is not replaced."""
        adapter = offline_adapter("konzum")
        content = (
            "NAZIV PROIZVODA,MALOPRODAJNA CIJENA,BARKOD\nMlijeko,\"1,29\",3850102\n"
        ).encode("utf-8")

        result = adapter.parse(content, "0604.csv")

        assert result.valid_rows == 1
        assert result.rows[0].price_cents == 129

    def test_xml_alternative_mapping(self, offline_adapter) -> None:
        """Test XML item paths and the alternative mapping together."""
        adapter = offline_adapter("studenac")
        content = (
            "<Cjenik><Proizvod><StoreId>5</StoreId><Naziv>Kruh</Naziv>"
            "<Cijena>1,20</Cijena></Proizvod></Cjenik>"
        ).encode("utf-8")

        result = adapter.parse(
            content, "Studenac_store-5.xml", ParseOptions(skip_invalid=True)
        )

        assert result.valid_rows == 1
        assert result.rows[0].store_identifier == "5"
        assert result.rows[0].price_cents == 120

    def test_xml_primary_mapping(self, offline_adapter) -> None:
        """Test the primary XML mapping with a derived store id."""
        adapter = offline_adapter("studenac")
        content = (
            b"<products><product><store_id>77</store_id><name>Sol</name>"
            b"<price>0.59</price><barcode>3850001000001</barcode></product></products>"
        )
        result = adapter.parse(content, "cjenik.xml")
        assert result.rows[0].store_identifier == "77"
        assert result.rows[0].barcodes == ["3850001000001"]

    def test_xlsx_layout_selection(self, offline_adapter, make_workbook) -> None:
        """Test that the DM government layout is picked by filename."""
        adapter = offline_adapter("dm")
        row = ["Šampon", 1001, "Balea", 4010355000001, "Kozmetika", "300 ml", "kom",
               16.63, None, 4.99, None, 4.99, 5.49]
        content = make_workbook([["Cjenik"], ["Datum"], ["Naziv", "Šifra"], row])

        filename = "vlada-oznacavanje-cijena-cijenik-236-data.xlsx"
        assert adapter.select_layout(filename) is not None

        result = adapter.parse(content, filename)

        assert result.valid_rows == 1
        parsed = result.rows[0]
        assert parsed.name == "Šampon"
        assert parsed.price_cents == 499
        assert parsed.anchor_price_cents == 549
        assert parsed.barcodes == ["4010355000001"]
        assert parsed.store_identifier == "dm_national"

    def test_preprocess_hook(self, offline_adapter) -> None:
        """Test that Plodine's leading comma decimals are fixed before parsing."""
        adapter = offline_adapter("plodine")
        content = "Naziv;Cijena\nKruh;,69\n".encode("windows-1250")

        result = adapter.parse(content, "Plodine_Zagreb_Ilica.csv")

        assert result.rows[0].price_cents == 69
        assert result.rows[0].store_identifier == "Zagreb_Ilica"

    def test_store_identifier_patterns(self, offline_adapter) -> None:
        """Test chain specific store id extraction."""
        lidl = offline_adapter("lidl")
        assert lidl.store_identifier_from_filename("Lidl_Poslovnica_Split.csv") == "Split"
        assert lidl.store_identifier_from_filename("Lidl_1234.csv") == "1234"

        konzum = offline_adapter("konzum")
        assert (
            konzum.store_identifier_from_filename("SUPERMARKET,ZAGREB,0604,Ilica,2025.csv")
            == "0604"
        )

    def test_portal_store_id(self, offline_adapter) -> None:
        """Test portal id resolution from filename and metadata."""
        adapter = offline_adapter("studenac")
        assert adapter.store_identifier_from_filename("Studenac_store-123.xml") == "123"

        file = DiscoveredFile(
            url="https://example.com/a.xml",
            filename="a.xml",
            type="xml",
            metadata={"storeId": "42"},
        )
        identifier = adapter.extract_store_identifier(file)
        assert identifier.type == "portal_id"
        assert identifier.value == "42"

    def test_national_store_id(self, offline_adapter) -> None:
        """Test the national store identifier."""
        adapter = offline_adapter("dm")
        file = DiscoveredFile(url="https://example.com/x.xlsx", filename="x.xlsx", type="xlsx")

        assert adapter.default_store_identifier("x.xlsx") == "dm_national"
        identifier = adapter.extract_store_identifier(file)
        assert identifier.type == "national"
        assert identifier.value == "dm_national"

    def test_extract_store_metadata(self, offline_adapter) -> None:
        """Test the store name built from the filename."""
        adapter = offline_adapter("plodine")
        file = DiscoveredFile(
            url="https://example.com/x.csv", filename="Plodine_Rijeka.csv", type="csv"
        )
        assert adapter.extract_store_metadata(file) == {"name": "Plodine Rijeka"}

    def test_validate_row(self, offline_adapter) -> None:
        """Test row validation rules."""
        adapter = offline_adapter("konzum")

        assert adapter.validate_row(make_row()).is_valid

        invalid = adapter.validate_row(make_row(price_cents=0))
        assert not invalid.is_valid
        assert "Price must be positive" in invalid.errors

        warned = adapter.validate_row(
            make_row(discount_price_cents=250, barcodes=["123"])
        )
        assert warned.is_valid
        assert len(warned.warnings) == 2

    def test_validate_result(self, offline_adapter) -> None:
        """Test that rows failing validation are dropped from a parse result."""
        adapter = offline_adapter("konzum")
        result = ParseResult(
            rows=[
                make_row(row_number=2, barcodes=["123"]),
                make_row(row_number=3, price_cents=0),
                make_row(row_number=4, price_cents=0, name=" "),
            ],
            errors=[ParseError(row_number=4, field="price", message="Invalid price value")],
            total_rows=3,
            valid_rows=3,
        )

        validated = adapter.validate_result(result)

        assert [r.row_number for r in validated.rows] == [2]
        assert validated.valid_rows == 1
        assert validated.total_rows == 3
        assert [(e.row_number, e.message) for e in validated.errors] == [
            (4, "Invalid price value"),
            (3, "Price must be positive"),
        ]
        assert [(w.row_number, w.message) for w in validated.warnings] == [
            (2, "Invalid barcode format: 123")
        ]
        assert len(result.rows) == 3

    def test_validate_row_strict_gtin(self) -> None:
        """Test GTIN checks for chains that require them."""
        profile = get_profile("konzum").model_copy(update={"strict_gtin": True})
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        adapter = ChainAdapter("konzum", profile, client=client)
        try:
            result = adapter.validate_row(make_row(barcodes=["123456789"]))
            assert result.is_valid
            assert any("Invalid GTIN" in w for w in result.warnings)

            result = adapter.validate_row(make_row())
            assert "No GTIN/barcode found for product" in result.warnings

            result = adapter.validate_row(make_row(barcodes=["3850001000001"]))
            assert result.warnings == []
        finally:
            adapter.close()

    def test_fetch_local_file(self, offline_adapter, tmp_path) -> None:
        """Test fetching a file:// URL."""
        path = tmp_path / "dm-2025-05-15.xlsx"
        path.write_bytes(b"content")
        adapter = offline_adapter("dm")
        file = DiscoveredFile(url=path.as_uri(), filename=path.name, type="xlsx")

        fetched = adapter.fetch(file)

        assert fetched.content == b"content"
        assert len(fetched.hash) == 64

    def test_to_field_mapping(self) -> None:
        """Test conversion of profile mappings to tagged XML mappings."""
        mapping = to_field_mapping({"name": "a", "store_identifier": {"first_of": ["x", "y"]}})
        assert isinstance(mapping["store_identifier"], Derived)
        assert mapping["store_identifier"].fn({"y": "9"}) == "9"

        with pytest.raises(ValueError):
            to_field_mapping({"name": {"last_of": ["x"]}})
        with pytest.raises(ValueError):
            to_field_mapping({"name": 3})


class TestHooks:
    """Tests for preprocess and postprocess hooks."""

    def test_leading_comma_decimals(self) -> None:
        """Test that the missing leading zero is added everywhere."""
        content, encoding = leading_comma_decimals(
            'a;,5\n,7;b\n"x",9'.encode("windows-1250"), "windows-1250"
        )
        assert encoding == "utf-8"
        assert content.decode("utf-8") == 'a;0,5\n0,7;b\n"x"0,9'

    def test_split_multi_gtin(self) -> None:
        """Test splitting a combined barcode cell."""
        result = ParseResult(
            rows=[make_row(barcodes=["385001;385002"]), make_row(barcodes=["385003"])],
            valid_rows=2,
        )
        split = split_multi_gtin(result)
        assert split.rows[0].barcodes == ["385001", "385002"]
        assert split.rows[1].barcodes == ["385003"]

    def test_unknown_hooks(self) -> None:
        """Test that unknown hook names are rejected."""
        assert get_preprocess_hook(None) is None
        with pytest.raises(ValueError):
            get_preprocess_hook("nope")
        with pytest.raises(ValueError):
            get_postprocess_hook("nope")


LIDL_PAGE = """
<html><body>
  <a href="/content/download/123/fileupload/Popis_cijena_po_trgovinama_na_dan_15_05_2025.zip">15.5.</a>
  <a href="https://tvrtka.lidl.hr/content/download/122/fileupload/Popis_cijena_po_trgovinama_na_dan_14_05_2025.zip">14.5.</a>
  <a href="/content/download/123/fileupload/Popis_cijena_po_trgovinama_na_dan_15_05_2025.zip">duplicate</a>
  <a href="/o-nama">O nama</a>
</body></html>
"""


class TestDiscovery:
    """Tests for the discovery strategies, driven through httpx.MockTransport."""

    def test_portal_links(self, offline_adapter) -> None:
        """Test link extraction, deduplication and date filtering."""
        adapter = offline_adapter("lidl", lambda request: httpx.Response(200, text=LIDL_PAGE))

        files = adapter.discover(datetime.date(2025, 5, 15))

        assert len(files) == 1
        file = files[0]
        assert file.filename == "Popis_cijena_po_trgovinama_na_dan_15_05_2025.zip"
        assert file.type == "zip"
        assert file.url == (
            "https://tvrtka.lidl.hr/content/download/123/fileupload/"
            "Popis_cijena_po_trgovinama_na_dan_15_05_2025.zip"
        )
        assert file.metadata["portalDate"] == "2025-05-15"
        assert file.metadata["source"] == "lidl_portal"

    def test_portal_links_without_date(self, offline_adapter) -> None:
        """Test that all dated files are returned when no date is given."""
        adapter = offline_adapter("lidl", lambda request: httpx.Response(200, text=LIDL_PAGE))
        files = adapter.discover()
        assert len(files) == 2

    def test_discovery_errors_give_empty_list(self, offline_adapter) -> None:
        """Test that HTTP failures during discovery don't propagate."""
        adapter = offline_adapter("lidl", lambda request: httpx.Response(500))
        assert adapter.discover() == []

    def test_paginated_portal(self, offline_adapter) -> None:
        """Test paging until no new links appear."""
        pages = {
            "1": '<a href="/cjenici/download?title=SUPERMARKET_0604">a</a>'
                 '<a href="/cjenici/download?title=SUPERMARKET_0605">b</a>',
            "2": '<a href="/cjenici/download?title=SUPERMARKET_0606">c</a>',
            "3": '<a href="/cjenici/download?title=SUPERMARKET_0606">c</a>',
        }
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            requested.append(page)
            assert request.url.params["date"] == "2025-05-15"
            return httpx.Response(200, text=pages.get(page, ""))

        adapter = offline_adapter("konzum", handler)
        files = adapter.discover(datetime.date(2025, 5, 15))

        assert [f.filename for f in files] == [
            "SUPERMARKET_0604.csv",
            "SUPERMARKET_0605.csv",
            "SUPERMARKET_0606.csv",
        ]
        assert requested == ["1", "2", "3"]
        assert files[2].metadata["page"] == "2"

    def test_json_listing(self, offline_adapter) -> None:
        """Test the dated JSON index."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/datoteke_cjenici/Cjenik20250515.json"
            return httpx.Response(
                200,
                json={
                    "files": [
                        {"name": "SUPERMARKET_1234.csv", "URL": "https://www.spar.hr/a.csv", "SHA": "abc"},
                        {"name": "broken"},
                    ]
                },
            )

        adapter = offline_adapter("interspar", handler)
        files = adapter.discover(datetime.date(2025, 5, 15))

        assert len(files) == 1
        assert files[0].url == "https://www.spar.hr/a.csv"
        assert files[0].metadata["sha"] == "abc"
        assert files[0].metadata["source"] == "interspar_json_api"

    def test_json_listing_malformed_entries(self, offline_adapter) -> None:
        """Test that non-object entries in the JSON index are skipped."""
        listing = {
            "files": [
                "SUPERMARKET_1.csv",
                None,
                42,
                ["x"],
                {"name": 7, "URL": "https://www.spar.hr/b.csv"},
                {"name": "SUPERMARKET_1234.csv", "URL": "https://www.spar.hr/a.csv"},
            ]
        }
        adapter = offline_adapter(
            "interspar", lambda request: httpx.Response(200, json=listing)
        )

        files = adapter.discover(datetime.date(2025, 5, 15))

        assert [f.filename for f in files] == ["SUPERMARKET_1234.csv"]

    def test_json_listing_not_a_list(self, offline_adapter) -> None:
        """Test that a listing whose files value is not a list gives no files."""
        adapter = offline_adapter(
            "interspar", lambda request: httpx.Response(200, json={"files": 3})
        )
        assert adapter.discover(datetime.date(2025, 5, 15)) == []

    def test_option_list(self, offline_adapter) -> None:
        """Test archives offered in a select box."""
        html = """
        <select>
          <option value="">Odaberi</option>
          <option value="https://www.eurospin.hr/cjenik/cjenik_15.05.2025-7.30.zip">cjenik_15.05.2025-7.30.zip</option>
          <option value="https://www.eurospin.hr/cjenik/cjenik_14.05.2025-7.30.zip">cjenik_14.05.2025-7.30.zip</option>
        </select>
        """
        adapter = offline_adapter("eurospin", lambda request: httpx.Response(200, text=html))

        files = adapter.discover(datetime.date(2025, 5, 15))

        assert len(files) == 1
        assert files[0].filename == "cjenik_15.05.2025-7.30.zip"
        assert files[0].type == "zip"

    def test_direct_url(self, offline_adapter) -> None:
        """Test a single file checked with HEAD."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "HEAD"
            return httpx.Response(
                200,
                headers={
                    "content-length": "1234",
                    "last-modified": "Thu, 15 May 2025 06:00:00 GMT",
                },
            )

        adapter = offline_adapter("dm", handler)
        files = adapter.discover(datetime.date(2025, 5, 15))

        assert len(files) == 1
        assert files[0].filename == "vlada-oznacavanje-cijena-cijenik-236-data.xlsx"
        assert files[0].size == 1234
        assert files[0].last_modified.year == 2025
        assert "portalUrl" in files[0].metadata

    def test_direct_url_falls_back_to_local_mirror(
        self, offline_adapter, tmp_path, monkeypatch
    ) -> None:
        """Test the local mirror fallback when the URL is unavailable."""
        mirror = tmp_path / "data" / "ingestion" / "dm"
        mirror.mkdir(parents=True)
        (mirror / "dm-2025-05-15.xlsx").write_bytes(b"x")
        (mirror / "dm-2025-05-14.xlsx").write_bytes(b"y")
        (mirror / "notes.txt").write_bytes(b"z")
        monkeypatch.chdir(tmp_path)

        adapter = offline_adapter("dm", lambda request: httpx.Response(404))
        files = adapter.discover(datetime.date(2025, 5, 15))

        assert len(files) == 1
        assert files[0].filename == "dm-2025-05-15.xlsx"
        assert files[0].url.startswith("file://")
        assert files[0].metadata["source"] == "dm_local"
