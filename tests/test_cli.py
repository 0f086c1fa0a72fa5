import json
import os

import pytest
import yaml

from zenith.cli import build_parser, main
from zenith.kernel.store import manifest_path

from conftest import BASE_JD, BrokenOracle, LinearOracle


@pytest.fixture
def config_file(tmp_path, catalog_file):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "kernel": {"path": str(tmp_path / "out.zk"), "catalog_file": str(catalog_file)},
        "logging": {"level": "WARNING", "json": False},
    }))
    return str(path)


def run(capsys, argv, oracle=None):
    code = main(argv, oracle=oracle if oracle is not None else LinearOracle())
    captured = capsys.readouterr()
    if code == 0:
        return code, json.loads(captured.out)
    return code, captured.err


class TestBuild:

    def test_build(self, capsys, tmp_path, config_file):
        code, summary = run(capsys, ["--config", config_file, "build", str(BASE_JD)])
        assert code == 0
        assert summary["tier"] == "minute"
        assert summary["size_bytes"] == 25 + 3 * 6
        assert summary["unresolved"] == []
        assert summary["base_utc"] == "2000-01-01T12:00:00Z"
        assert os.path.exists(tmp_path / "out.zk")
        assert os.path.exists(manifest_path(str(tmp_path / "out.zk")))

    def test_build_with_walk_and_tier(self, capsys, tmp_path, config_file):
        out = str(tmp_path / "day.zk")
        code, summary = run(capsys, [
            "--config", config_file, "build", "2000-01-01T12:00:00Z", str(BASE_JD + 2),
            "--tier", "day", "--out", out, "--no-checksum"
        ])
        assert code == 0
        assert summary["span_steps"] == 2
        assert summary["sha256"] is None
        assert summary["max_deviation_deg"]["Beta"] == pytest.approx(2 * 13.1764)
        assert os.path.getsize(out) == 25 + 3 * 3

    def test_unresolved_body_does_not_fail(self, capsys, config_file):
        code, summary = run(capsys, ["--config", config_file, "build", str(BASE_JD)],
                            oracle=LinearOracle(failing={2}))
        assert code == 0
        assert [u["body"] for u in summary["unresolved"]] == ["Beta"]

    def test_oracle_unavailable(self, capsys, config_file):
        code, err = run(capsys, ["--config", config_file, "build", str(BASE_JD)], oracle=BrokenOracle())
        assert code == 1
        assert "ORACLE.FAILURE" in err

    def test_bad_time(self, capsys, config_file):
        code, _ = run(capsys, ["--config", config_file, "build", "not-a-time"])
        assert code == 1


class TestReadCommands:

    @pytest.fixture
    def built(self, capsys, config_file):
        assert run(capsys, ["--config", config_file, "build", str(BASE_JD)])[0] == 0
        return config_file

    def test_search_base_epoch(self, capsys, built):
        code, result = run(capsys, ["--config", built, "search", str(BASE_JD)])
        assert code == 0
        assert result["source"] == "kernel"
        assert result["verified"] is True
        assert [b["name"] for b in result["bodies"]] == ["Alpha", "Beta", "Gamma"]

    def test_search_offline_off_epoch(self, capsys, built):
        code, _ = run(capsys, ["--config", built, "search", str(BASE_JD + 1), "--offline"])
        assert code == 1

    def test_verify(self, capsys, built):
        code, report = run(capsys, ["--config", built, "verify", "--passes", "2", "--points", "5"])
        assert code == 0
        assert report["points_checked"] == 10
        assert report["error_samples"] == 0

    def test_verify_fixed_tolerance(self, capsys, built):
        code, report = run(capsys, [
            "--config", built, "verify", "--passes", "2", "--points", "5",
            "--tolerance", "1e-7"
        ])
        assert code == 0
        assert report["error_samples"] == 3

    def test_info(self, capsys, built):
        code, info = run(capsys, ["--config", built, "info"])
        assert code == 0
        assert info["tier"] == "minute"
        assert info["checksum_valid"] is True
        assert info["missing"] == []
        assert set(info["longitudes"]) == {"Alpha", "Beta", "Gamma"}

    def test_truncated_kernel(self, capsys, built, tmp_path):
        path = tmp_path / "out.zk"
        path.write_bytes(path.read_bytes()[:-1])
        code, err = run(capsys, ["--config", built, "info"])
        assert code == 1
        assert "KERNEL.FORMAT_MISMATCH" in err

    def test_missing_kernel(self, capsys, config_file, tmp_path):
        code, _ = run(capsys, ["--config", config_file, "search", str(BASE_JD),
                               "--kernel", str(tmp_path / "none.zk")])
        assert code == 1


class TestParser:

    def test_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_log_level_case_insensitive(self):
        args = build_parser().parse_args(["--log-level", "debug", "info"])
        assert args.log_level == "DEBUG"

    def test_negative_workers(self, capsys, config_file):
        code, _ = run(capsys, ["--config", config_file, "build", str(BASE_JD), "--workers", "-1"])
        assert code == 1


class TestSiderealAndBench:

    @pytest.fixture
    def built(self, capsys, config_file):
        assert run(capsys, ["--config", config_file, "build", str(BASE_JD)])[0] == 0
        return config_file

    def test_search_sidereal(self, capsys, built):
        _, tropical = run(capsys, ["--config", built, "search", str(BASE_JD)])
        code, result = run(capsys, ["--config", built, "search", str(BASE_JD),
                                    "--zodiac", "sidereal", "--ayanamsa", "lahiri"])
        assert code == 0
        assert tropical["zodiac"] == "tropical"
        assert result["zodiac"] == "sidereal"
        assert result["ayanamsa"] == "lahiri"
        assert result["ayanamsa_deg"] == pytest.approx(23.857092)
        assert result["bodies"][0]["lon_deg"] == pytest.approx(
            (tropical["bodies"][0]["lon_deg"] - 23.857092) % 360.0
        )

    def test_search_sidereal_default(self, capsys, built):
        code, result = run(capsys, ["--config", built, "search", str(BASE_JD), "--zodiac", "sidereal"])
        assert code == 0
        assert result["ayanamsa"] == "lahiri"

    def test_ayanamsa_with_tropical(self, capsys, built):
        code, err = run(capsys, ["--config", built, "search", str(BASE_JD), "--ayanamsa", "lahiri"])
        assert code == 1
        assert "SYSTEM.INCOMPATIBLE" in err

    def test_bench(self, capsys, built):
        code, report = run(capsys, ["--config", built, "bench", "--iterations", "5"])
        assert code == 0
        assert report["jd"] == BASE_JD
        assert report["source"] == "kernel"
        assert report["iterations"] == 5
        assert report["bodies"] == 3
        assert report["oracle_failures"] == 0
        assert report["max_deviation_deg"] < 1e-4
        assert report["kernel_us_per_query"] > 0
        assert report["oracle_us_per_query"] > 0

    def test_bench_rejects_far_time(self, capsys, built):
        code, err = run(capsys, ["--config", built, "bench", "--time", str(BASE_JD + 10)])
        assert code == 1
        assert "outside the kernel's reach" in err
