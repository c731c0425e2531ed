"""
Unit tests for report generation.
"""

import io
import json
from datetime import datetime, timezone

import pytest

from reconcile_tool.core.models import (
    ErrorDetail, ExecutionResult, HandlerResult, ResultStatus, RunReport
)
from reconcile_tool.reporting.generator import ReportGenerator, report_records, write_jsonl


@pytest.fixture
def sample_report():
    return RunReport(
        run_id="run-042",
        host="web-01",
        policy_name="baseline",
        started_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        results=[
            ExecutionResult(resource_id="ip-forward-off", kind="sysctl_value",
                            status=ResultStatus.CHANGED,
                            before={'found': True, 'value': "1"}, after={'found': True, 'value': "0"}),
            ExecutionResult(resource_id="tmp-noexec", kind="mount_option",
                            status=ResultStatus.FAILED, message="/tmp is not mounted",
                            error=ErrorDetail(type="MutationError", message="/tmp is not mounted")),
        ],
        handler_results=[
            HandlerResult(name="reload sysctl", status=ResultStatus.CHANGED, message="command completed"),
        ],
    )


class TestRecords:
    """Test flat record output."""

    def test_report_records(self, sample_report):
        records = report_records(sample_report)

        assert [r['type'] for r in records] == ["resource", "resource", "handler"]
        assert records[0]['before'] == {'found': True, 'value': "1"}
        assert records[1]['error_type'] == "MutationError"
        assert records[2]['handler'] == "reload sysctl"
        assert all(r['run_id'] == "run-042" for r in records)

    def test_write_jsonl(self, sample_report):
        stream = io.StringIO()

        write_jsonl([sample_report, sample_report], stream)

        lines = stream.getvalue().splitlines()
        assert len(lines) == 6
        assert json.loads(lines[1])['status'] == "failed"


class TestReportGenerator:
    """Test report files."""

    def test_json_report(self, sample_report, tmp_path):
        path = ReportGenerator().generate_report(sample_report, "json", str(tmp_path / "r.json"))

        data = json.loads(open(path).read())
        assert data['run_id'] == "run-042"
        assert data['summary']['failed'] == 1
        assert data['handlers_fired'] == ["reload sysctl"]
        assert data['exit_code'] == 1

    def test_jsonl_report(self, sample_report, tmp_path):
        path = ReportGenerator().generate_report(sample_report, "JSONL", str(tmp_path / "r.jsonl"))
        assert len(open(path).read().splitlines()) == 3

    def test_html_report(self, sample_report, tmp_path):
        path = ReportGenerator().generate_report(sample_report, "html", str(tmp_path / "out" / "r.html"))

        html = open(path).read()
        assert "Reconcile Report" in html
        assert "ip-forward-off" in html
        assert "MutationError: /tmp is not mounted" in html
        assert "reload sysctl" in html

    def test_unsupported_format(self, sample_report):
        with pytest.raises(ValueError, match="Unsupported report format"):
            ReportGenerator().generate_report(sample_report, "pdf")
