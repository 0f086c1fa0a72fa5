import pytest

from zenith.errors import CatalogError
from zenith.ephemeris.catalog import (
    DEFAULT_CATALOG, Body, BodyCatalog, load_catalog, point_body, resolve_catalog
)


class TestValidation:

    def test_empty_catalog_rejected(self):
        with pytest.raises(CatalogError):
            BodyCatalog([])

    def test_duplicate_names_rejected(self):
        with pytest.raises(CatalogError) as exc:
            BodyCatalog([Body("Sun", 10, 1.0), Body("Sun", 11, 1.0)])
        assert exc.value.context["body_index"] == 1

    @pytest.mark.parametrize("max_speed", [0.0, -2.0])
    def test_non_positive_max_speed_rejected(self, max_speed):
        with pytest.raises(CatalogError):
            BodyCatalog([Body("Sun", 10, max_speed)])

    def test_fallback_flag_needs_fallback_id(self):
        with pytest.raises(CatalogError):
            BodyCatalog([Body("Jupiter", 599, 0.3, supports_fallback_id=True)])

    def test_error_code(self):
        with pytest.raises(CatalogError) as exc:
            BodyCatalog([])
        assert exc.value.to_dict()["code"] == "CATALOG.INVALID"


class TestFingerprint:

    def test_equal_catalogs_share_fingerprint(self, catalog, three_body_catalog):
        assert catalog.fingerprint == three_body_catalog.fingerprint

    def test_fits_32_bits(self):
        assert 0 <= DEFAULT_CATALOG.fingerprint <= 0xFFFFFFFF

    def test_changes_with_order(self, three_body_catalog):
        reordered = BodyCatalog(list(reversed(three_body_catalog.bodies)), name="test-three")
        assert reordered.fingerprint != three_body_catalog.fingerprint

    def test_changes_with_max_speed(self, three_body_catalog):
        bodies = list(three_body_catalog.bodies)
        bodies[0] = Body("Alpha", 1, 2.0)
        assert BodyCatalog(bodies, name="test-three").fingerprint != three_body_catalog.fingerprint

    def test_changes_with_version(self, three_body_catalog):
        bumped = BodyCatalog(three_body_catalog.bodies, name="test-three", version=2)
        assert bumped.fingerprint != three_body_catalog.fingerprint

    def test_symbol_is_display_only(self, three_body_catalog):
        bodies = list(three_body_catalog.bodies)
        bodies[0] = Body("Alpha", 1, 1.0, symbol="A")
        assert BodyCatalog(bodies, name="test-three").fingerprint == three_body_catalog.fingerprint


class TestDefaultCatalog:

    def test_bodies(self):
        assert len(DEFAULT_CATALOG) == 15
        assert DEFAULT_CATALOG.names()[:2] == ["Sun", "Moon"]

    def test_planets_fall_back_to_barycenters(self):
        jupiter = DEFAULT_CATALOG[DEFAULT_CATALOG.index_of("jupiter")]
        assert jupiter.supports_fallback_id
        assert jupiter.fallback_id == 5

    def test_sun_and_moon_have_no_fallback(self):
        for name in ("Sun", "Moon"):
            assert not DEFAULT_CATALOG[DEFAULT_CATALOG.index_of(name)].supports_fallback_id

    def test_index_of_unknown(self):
        with pytest.raises(KeyError):
            DEFAULT_CATALOG.index_of("Vulcan")


class TestLoadCatalog:

    def test_load(self, catalog):
        assert catalog.name == "test-three"
        assert catalog.names() == ["Alpha", "Beta", "Gamma"]
        assert catalog[1].max_speed == 13.5

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_catalog(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(CatalogError):
            load_catalog(str(path))

    def test_missing_max_speed(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: x\nbodies:\n  - {name: Sun, id: 10}\n")
        with pytest.raises(CatalogError):
            load_catalog(str(path))

    def test_zero_max_speed(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: x\nbodies:\n  - {name: Sun, id: 10, max_speed: 0}\n")
        with pytest.raises(CatalogError):
            load_catalog(str(path))

    def test_empty_body_list(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: x\nbodies: []\n")
        with pytest.raises(CatalogError):
            load_catalog(str(path))

    def test_resolve_default(self):
        assert resolve_catalog(None) is DEFAULT_CATALOG

    def test_resolve_file(self, catalog_file):
        assert resolve_catalog(str(catalog_file)).name == "test-three"


class TestDerivedPoints:

    def write(self, tmp_path, text):
        path = tmp_path / "points.yaml"
        path.write_text(text)
        return str(path)

    def test_points_and_houses_follow_bodies(self, tmp_path):
        catalog = load_catalog(self.write(tmp_path, (
            "name: chart\n"
            "bodies:\n  - {name: Sun, id: 10, max_speed: 1.1}\n"
            "points: [asc, \"ayanamsa:lahiri\"]\n"
            "houses: [placidus, Whole_Sign]\n"
        )))
        assert len(catalog) == 1 + 2 + 24
        assert catalog.names()[:3] == ["Sun", "ASC", "Ayanamsa lahiri"]
        assert catalog[3].id == "cusp:placidus:1"
        assert catalog[26].id == "cusp:whole_sign:12"
        assert all(body.derived for body in list(catalog)[1:])
        assert catalog.point_index("ayanamsa:lahiri") == 2
        assert catalog.point_index("CUSP:placidus:10") == 12
        assert catalog.point_index("mc") is None

    def test_points_only(self, tmp_path):
        catalog = load_catalog(self.write(tmp_path, "name: angles\npoints: [asc, mc]\n"))
        assert catalog.names() == ["ASC", "MC"]

    @pytest.mark.parametrize("text", [
        "name: x\npoints: [sunrise]\n",
        "name: x\npoints: [\"ayanamsa:galactic_center\"]\n",
        "name: x\nhouses: [porphyry]\n",
        "name: x\npoints: [7]\n",
    ])
    def test_unknown_point(self, tmp_path, text):
        with pytest.raises(CatalogError):
            load_catalog(self.write(tmp_path, text))

    def test_point_body_defaults(self):
        body = point_body(" ARMC ")
        assert (body.name, body.id, body.derived) == ("ARMC", "armc", True)
        assert body.max_speed > 360.98

    def test_derived_flag_changes_fingerprint(self):
        plain = BodyCatalog([Body("ASC", "asc", 1000.0)])
        derived = BodyCatalog([Body("ASC", "asc", 1000.0, derived=True)])
        assert plain.fingerprint != derived.fingerprint

    def test_derived_body_cannot_fall_back(self):
        with pytest.raises(CatalogError):
            BodyCatalog([Body("ASC", "asc", 1000.0, fallback_id=3, supports_fallback_id=True, derived=True)])

    def test_derived_body_needs_known_id(self):
        with pytest.raises(CatalogError):
            BodyCatalog([Body("Vertex", "vertex", 1000.0, derived=True)])
