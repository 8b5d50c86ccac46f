from datetime import datetime

from impfi.model import ImportMatch, ScanFailure, ScanReport


def test_report_timestamp_utc_format():
    r = ScanReport(root=".", extension=".dll", targets=["X"], target_machine="amd64", thunk_termination="documented")
    assert r.timestamp_utc.endswith("Z")
    datetime.fromisoformat(r.timestamp_utc.replace("Z", "+00:00"))


def test_report_round_trip_validation():
    """Verify that a dumped report can be re-validated by the model."""
    r = ScanReport(
        root="/drivers",
        extension=".sys",
        targets=["IoCreateDevice"],
        target_machine="amd64",
        thunk_termination="documented",
        files_considered=2,
        files_parsed=1,
        matches=[ImportMatch(path="/drivers/a.sys", file_size=4096, matched=["IoCreateDevice"], import_count=1)],
        failures=[
            ScanFailure(path="/drivers/b.sys", code="E_PE_HEADER_TRUNCATED", kind="truncated", stage="dos_header", message="x")
        ],
    )

    r2 = ScanReport.model_validate(r.model_dump())
    r3 = ScanReport.model_validate_json(r.model_dump_json())

    assert r2.matches[0].matched == ["IoCreateDevice"]
    assert r3.failures[0].stage == "dos_header"
