import json
import os

import pytest

from zenith.errors import FormatMismatch, RangeOverflow
from zenith.ephemeris.catalog import Body, BodyCatalog
from zenith.ephemeris.oracle import GeoLocation
from zenith.kernel.codec import PrecisionTier
from zenith.kernel.format import (
    HEADER_SIZE, Kernel, KernelHeader, PositionRecord,
    dumps, expected_size, format_tag, loads, make_records, pack_record
)
from zenith.kernel.store import (
    KernelReader, manifest_path, read_kernel, verify_checksum, write_kernel
)

from conftest import BASE_JD


def make_kernel(catalog, tier=PrecisionTier.MINUTE, longitudes=(10.5, 200.25, 359.5),
                speeds=(0.5, -12.0, 0.1), **header):
    records = make_records(list(longitudes), list(speeds), catalog, tier)
    return Kernel(KernelHeader(tier, BASE_JD, catalog.fingerprint, **header), records)


class TestHeader:

    def test_size(self):
        assert HEADER_SIZE == 25

    def test_tag(self):
        assert format_tag(PrecisionTier.MINUTE) == 0x12
        assert format_tag(PrecisionTier.DAY) == 0x13

    def test_round_trip_with_location(self, three_body_catalog):
        header = KernelHeader(PrecisionTier.SECOND, BASE_JD, three_body_catalog.fingerprint,
                              timezone_offset=-18000, location=GeoLocation(51.4769, -0.0005))
        parsed = KernelHeader.unpack(header.pack())
        assert parsed.tier is PrecisionTier.SECOND
        assert parsed.base_epoch == BASE_JD
        assert parsed.timezone_offset == -18000
        assert parsed.location.lat == pytest.approx(51.4769, abs=1e-6)
        assert parsed.location.lon == pytest.approx(-0.0005, abs=1e-6)

    def test_absent_location(self, three_body_catalog):
        header = KernelHeader(PrecisionTier.DAY, BASE_JD, three_body_catalog.fingerprint)
        assert KernelHeader.unpack(header.pack()).location is None

    def test_timezone_limit(self, three_body_catalog):
        with pytest.raises(ValueError):
            KernelHeader(PrecisionTier.DAY, BASE_JD, three_body_catalog.fingerprint,
                         timezone_offset=19 * 3600)

    def test_little_endian_layout(self, three_body_catalog):
        data = KernelHeader(PrecisionTier.MINUTE, BASE_JD, 0x01020304, timezone_offset=3600).pack()
        assert data[0] == 0x12
        assert data[1:5] == (3600).to_bytes(4, "little")
        assert data[13:17] == bytes([4, 3, 2, 1])


class TestSerialization:

    @pytest.mark.parametrize("tier", list(PrecisionTier))
    def test_length(self, three_body_catalog, tier):
        data = dumps(make_kernel(three_body_catalog, tier))
        assert len(data) == HEADER_SIZE + 3 * tier.layout.record_size
        assert len(data) == expected_size(tier, 3)

    @pytest.mark.parametrize("tier", list(PrecisionTier))
    def test_round_trip(self, three_body_catalog, tier):
        kernel = make_kernel(three_body_catalog, tier)
        loaded = loads(dumps(kernel), three_body_catalog)
        assert loaded == kernel
        for index, expected in enumerate((10.5, 200.25, 359.5)):
            assert loaded.longitude(index) == pytest.approx(expected, abs=tier.layout.angle.step)

    def test_speeds_decoded_per_body(self, three_body_catalog):
        kernel = make_kernel(three_body_catalog, PrecisionTier.SECOND)
        assert kernel.speed(1, three_body_catalog) == pytest.approx(-12.0, abs=1e-6)
        assert kernel.speed(2, three_body_catalog) == pytest.approx(0.1, abs=1e-6)

    def test_day_tier_has_no_speed(self, three_body_catalog):
        kernel = make_kernel(three_body_catalog, PrecisionTier.DAY)
        assert kernel.records[0].speed is None
        assert kernel.speed(0, three_body_catalog) is None

    def test_missing_body_uses_sentinel(self, three_body_catalog):
        kernel = make_kernel(three_body_catalog, longitudes=(10.5, None, 359.5), speeds=(0.5, None, 0.1))
        loaded = loads(dumps(kernel), three_body_catalog)
        assert loaded.records[1].longitude == PrecisionTier.MINUTE.layout.angle.sentinel
        assert loaded.longitude(1) is None
        assert loaded.speed(1, three_body_catalog) is None
        assert loaded.missing() == [1]

    def test_pack_refuses_oversized_value(self):
        layout = PrecisionTier.DAY.layout
        with pytest.raises(RangeOverflow):
            pack_record(PositionRecord(1 << 24), layout, body_index=4)


class TestFormatRejection:

    @pytest.fixture
    def data(self, three_body_catalog):
        return dumps(make_kernel(three_body_catalog))

    def test_truncated_by_one_byte(self, data, three_body_catalog):
        with pytest.raises(FormatMismatch):
            loads(data[:-1], three_body_catalog)

    def test_extra_byte(self, data, three_body_catalog):
        with pytest.raises(FormatMismatch):
            loads(data + b"\x00", three_body_catalog)

    def test_shorter_than_header(self, data, three_body_catalog):
        with pytest.raises(FormatMismatch):
            loads(data[:10], three_body_catalog)

    def test_tag_for_other_tier(self, data, three_body_catalog):
        # DAY records are 3 bytes; the remaining 18 bytes were written as MINUTE
        tampered = bytes([format_tag(PrecisionTier.DAY)]) + data[1:]
        with pytest.raises(FormatMismatch) as exc:
            loads(tampered, three_body_catalog)
        assert exc.value.context["expected"] == HEADER_SIZE + 9

    @pytest.mark.parametrize("tag", [0x22, 0x10, 0x1F, 0x00])
    def test_unknown_tag(self, data, three_body_catalog, tag):
        with pytest.raises(FormatMismatch):
            loads(bytes([tag]) + data[1:], three_body_catalog)

    def test_other_catalog(self, data):
        other = BodyCatalog([Body("A", 1, 1.0), Body("B", 2, 13.5), Body("C", 3, 0.2)], name="other")
        with pytest.raises(FormatMismatch):
            loads(data, other)

    def test_longitude_past_modulus(self, three_body_catalog):
        data = bytearray(dumps(make_kernel(three_body_catalog, tier=PrecisionTier.DAY)))
        # DAY modulus is 12,960,000; the sentinel is 16,777,215
        data[HEADER_SIZE:HEADER_SIZE + 3] = (13_000_000).to_bytes(3, "little")
        with pytest.raises(FormatMismatch) as exc:
            loads(bytes(data), three_body_catalog)
        assert exc.value.context["body_index"] == 0

    def test_sentinel_accepted(self, three_body_catalog):
        kernel = make_kernel(three_body_catalog, tier=PrecisionTier.DAY, longitudes=(10.5, None, 359.5))
        assert loads(dumps(kernel), three_body_catalog).missing() == [1]


class TestWriteKernel:

    def test_write_and_read(self, tmp_path, three_body_catalog):
        kernel = make_kernel(three_body_catalog)
        path = tmp_path / "k.zk"
        digest = write_kernel(kernel, str(path))

        assert path.stat().st_size == kernel.size
        assert read_kernel(str(path), three_body_catalog) == kernel

        manifest = json.loads(open(manifest_path(str(path))).read())
        assert manifest["sha256"] == digest
        assert manifest["size"] == kernel.size
        assert manifest["tier"] == "minute"

    def test_no_temp_files_left(self, tmp_path, three_body_catalog):
        write_kernel(make_kernel(three_body_catalog), str(tmp_path / "k.zk"))
        assert sorted(os.listdir(tmp_path)) == ["k.zk", "k.zk.sha256.json"]

    def test_replace_existing(self, tmp_path, three_body_catalog):
        path = tmp_path / "k.zk"
        write_kernel(make_kernel(three_body_catalog, PrecisionTier.DAY), str(path))
        write_kernel(make_kernel(three_body_catalog, PrecisionTier.SECOND), str(path))
        assert read_kernel(str(path), three_body_catalog).tier is PrecisionTier.SECOND
        assert verify_checksum(str(path))

    def test_without_checksum(self, tmp_path, three_body_catalog):
        path = tmp_path / "k.zk"
        assert write_kernel(make_kernel(three_body_catalog), str(path), checksum=False) is None
        assert not os.path.exists(manifest_path(str(path)))
        assert not verify_checksum(str(path))

    def test_missing_directory(self, tmp_path, three_body_catalog):
        with pytest.raises(OSError):
            write_kernel(make_kernel(three_body_catalog), str(tmp_path / "nope" / "k.zk"))

    def test_checksum_detects_corruption(self, tmp_path, three_body_catalog):
        path = tmp_path / "k.zk"
        write_kernel(make_kernel(three_body_catalog), str(path))
        data = bytearray(path.read_bytes())
        data[-1] ^= 0xFF
        path.write_bytes(bytes(data))
        assert not verify_checksum(str(path))


class TestKernelReader:

    @pytest.fixture
    def path(self, tmp_path, three_body_catalog):
        path = tmp_path / "k.zk"
        write_kernel(make_kernel(three_body_catalog), str(path))
        return str(path)

    def test_random_access(self, path, three_body_catalog):
        with KernelReader(path, three_body_catalog) as reader:
            assert len(reader) == 3
            assert reader.header.tier is PrecisionTier.MINUTE
            assert reader.longitude(1) == pytest.approx(200.25)
            assert reader.record(2) == make_kernel(three_body_catalog).records[2]

    def test_kernel_matches_loads(self, path, three_body_catalog):
        with KernelReader(path, three_body_catalog) as reader:
            kernel = reader.kernel()
        with open(path, "rb") as f:
            assert kernel == loads(f.read(), three_body_catalog)

    def test_info(self, path, three_body_catalog):
        with KernelReader(path, three_body_catalog) as reader:
            info = reader.info()
        assert info["size"] == HEADER_SIZE + 18
        assert info["tier"] == "minute"
        assert info["catalog_fingerprint"] == f"{three_body_catalog.fingerprint:08x}"

    def test_index_out_of_range(self, path, three_body_catalog):
        with KernelReader(path, three_body_catalog) as reader:
            with pytest.raises(IndexError):
                reader.record(3)

    def test_closed_reader(self, path, three_body_catalog):
        reader = KernelReader(path, three_body_catalog)
        with pytest.raises(RuntimeError):
            reader.record(0)

    def test_rejects_truncated_file(self, path, three_body_catalog):
        with open(path, "r+b") as f:
            f.truncate(os.path.getsize(path) - 1)
        reader = KernelReader(path, three_body_catalog)
        with pytest.raises(FormatMismatch):
            reader.open()
        assert reader._file is None

    def test_rejects_tiny_file(self, tmp_path, three_body_catalog):
        path = tmp_path / "tiny.zk"
        path.write_bytes(b"\x12\x00")
        with pytest.raises(FormatMismatch):
            KernelReader(str(path), three_body_catalog).open()

    def test_missing_file(self, tmp_path, three_body_catalog):
        with pytest.raises(FileNotFoundError):
            KernelReader(str(tmp_path / "none.zk"), three_body_catalog).open()

    def test_rejects_out_of_range_record(self, tmp_path, three_body_catalog):
        path = tmp_path / "bad.zk"
        data = bytearray(dumps(make_kernel(three_body_catalog, tier=PrecisionTier.DAY)))
        offset = HEADER_SIZE + 2 * 3
        data[offset:offset + 3] = (13_000_000).to_bytes(3, "little")
        path.write_bytes(bytes(data))
        with KernelReader(str(path), three_body_catalog) as reader:
            assert reader.longitude(0) == pytest.approx(10.5)
            with pytest.raises(FormatMismatch) as exc:
                reader.kernel()
        assert exc.value.context["body_index"] == 2
