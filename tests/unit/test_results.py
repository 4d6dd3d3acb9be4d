from __future__ import annotations

import json
from pathlib import Path

import pytest

from xaptr.errors import ComparisonInputError, RawResultsFormatError
from xaptr.model import MetricSample, RawResultSet, RunFailure, RunRecord
from xaptr.results import load_raw_results, write_raw_results


def _raw_set() -> RawResultSet:
    return RawResultSet(
        project_identity="/src/App/App.csproj",
        configuration="Release",
        package_name="com.example.app",
        created_at="2026-01-01T00:00:00.000Z",
        runs=[
            RunRecord(
                run_index=0,
                started_at="2026-01-01T00:00:01.000Z",
                succeeded=True,
                samples=[MetricSample(key="cold_start_total_ms", value=812, unit="ms", phase="cold-start")],
                managed_profile_artifact_path=Path("/data/runs/run-000/managed.mlpd"),
            ),
            RunRecord(
                run_index=1,
                started_at="2026-01-01T00:01:01.000Z",
                succeeded=False,
                failure=RunFailure(phase="deploy", kind="timeout", detail="adb install timed out after 300.0s"),
            ),
        ],
        host={"platform": "Linux", "device_serial": None},
    )


def test_write_then_load(tmp_path: Path) -> None:
    path = write_raw_results(_raw_set(), tmp_path / "d" / "raw-results.json")
    text = path.read_text()
    assert text.endswith("}\n")
    assert json.loads(text)["schema_version"] == "1.0.0"

    loaded = load_raw_results(tmp_path / "d")
    assert loaded == _raw_set()
    assert loaded.source_path == path.resolve()
    assert loaded.runs[1].failure_reason == "deploy-timeout: adb install timed out after 300.0s"


def test_write_is_once_only(tmp_path: Path) -> None:
    path = tmp_path / "raw-results.json"
    write_raw_results(_raw_set(), path)
    with pytest.raises(FileExistsError):
        write_raw_results(_raw_set(), path)


def test_load_accepts_file_path_and_ignores_unknown_keys(tmp_path: Path) -> None:
    payload = _raw_set().to_dict()
    payload["written_by"] = "xaptr 9.9"
    payload["runs"][0]["gpu_counters"] = {"x": 1}
    del payload["runs"][0]["attempts"]
    del payload["runs"][1]["failure"]
    p = tmp_path / "other-name.json"
    p.write_text(json.dumps(payload))

    loaded = load_raw_results(p)
    assert loaded.runs[0].attempts == 1
    assert loaded.runs[1].failure is not None
    assert loaded.runs[1].failure_reason == "orchestrator-error: deploy-timeout: adb install timed out after 300.0s"


def test_load_missing_location_or_file(tmp_path: Path) -> None:
    with pytest.raises(ComparisonInputError, match="does not exist"):
        load_raw_results(tmp_path / "nope")
    with pytest.raises(ComparisonInputError, match="No raw-results.json"):
        load_raw_results(tmp_path)


@pytest.mark.parametrize(
    "content",
    [
        "{truncated",
        json.dumps({"schema_version": "1.0.0", "configuration": "Release"}),
        json.dumps({**_raw_set().to_dict(), "schema_version": "2.0.0"}),
    ],
)
def test_load_rejects_malformed(tmp_path: Path, content: str) -> None:
    (tmp_path / "raw-results.json").write_text(content)
    with pytest.raises(RawResultsFormatError):
        load_raw_results(tmp_path)


def test_load_rejects_duplicate_keys_in_file(tmp_path: Path) -> None:
    payload = _raw_set().to_dict()
    payload["runs"][0]["samples"].append(dict(payload["runs"][0]["samples"][0]))
    (tmp_path / "raw-results.json").write_text(json.dumps(payload))
    with pytest.raises(RawResultsFormatError, match="duplicate"):
        load_raw_results(tmp_path)
