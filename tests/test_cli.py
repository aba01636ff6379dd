from pathlib import Path

from rich.console import Console

from fakes import HASH_A
from fhirp2p.main import build_parser, records_table, run_magnet, run_setup
from fhirp2p.records import RecordStatus, SessionState, TorrentRecord


def test_magnet_create(capsys) -> None:
    args = build_parser().parse_args(["magnet", "create", "abc123", "--name", "N", "-t", "udp://t"])

    assert run_magnet(args) == 0
    assert "magnet:?xt=urn:btih:abc123&dn=N&tr=udp%3A%2F%2Ft" in capsys.readouterr().out


def test_magnet_parse_invalid(capsys) -> None:
    args = build_parser().parse_args(["magnet", "parse", "not-a-magnet"])

    assert run_magnet(args) == 1
    assert "Invalid magnet URI" in capsys.readouterr().out


def test_setup_writes_config(tmp_path: Path) -> None:
    output = tmp_path / "config.toml"
    args = build_parser().parse_args(["setup", "--output", str(output)])

    assert run_setup(args) == 0
    assert "storage_path" in output.read_text()

    # Refuses to overwrite without --force
    assert run_setup(args) == 1
    args = build_parser().parse_args(["setup", "--output", str(output), "--force"])
    assert run_setup(args) == 0


def test_records_table() -> None:
    record = TorrentRecord(
        info_hash=HASH_A,
        name="cohort",
        total_size=2048,
        status=RecordStatus(progress=0.5, peers=3, state=SessionState.DOWNLOADING),
    )

    console = Console(record=True, width=160)
    console.print(records_table([record]))
    text = console.export_text()

    assert "cohort" in text
    assert "50.0%" in text
    assert "2.0 KB" in text
    assert "downloading" in text


def test_seed_arguments() -> None:
    args = build_parser().parse_args(["seed", "a.json", "b.json", "-t", "bundle", "--forever"])

    assert args.paths == ["a.json", "b.json"]
    assert args.content_type == "bundle"
    assert args.forever is True
