"""
Report generator for run results.

Serializes RunReports as JSON Lines (one record per resource and per
handler outcome), as a single JSON document, or as an HTML page.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, TextIO

from jinja2 import Template

from ..core.models import ResultStatus, RunReport

HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Reconcile Report - {{ report.host }}</title>
    <style>
        body { font-family: sans-serif; margin: 2em; color: #222; }
        table { border-collapse: collapse; width: 100%; margin-bottom: 2em; }
        th, td { border: 1px solid #ccc; padding: 6px 10px; text-align: left; }
        th { background: #f4f4f4; }
        .unchanged { color: #28a745; }
        .changed { color: #007bff; }
        .failed { color: #dc3545; font-weight: bold; }
        .skipped { color: #888; }
    </style>
</head>
<body>
    <h1>Reconcile Report</h1>
    <p>
        Host: <strong>{{ report.host }}</strong><br>
        Policy: {{ report.policy_name or "-" }}<br>
        Run ID: {{ report.run_id }}<br>
        Started: {{ report.started_at.strftime("%Y-%m-%d %H:%M:%S %Z") }}<br>
        {% if report.dry_run %}Mode: dry run<br>{% endif %}
        {% if report.halted_by %}<span class="failed">Halted by fatal resource {{ report.halted_by }}</span><br>{% endif %}
        {% if report.cancelled %}<span class="failed">Run cancelled</span><br>{% endif %}
        Generated: {{ generated_at }}
    </p>

    <h2>Summary</h2>
    <table>
        <tr>{% for status in statuses %}<th>{{ status|capitalize }}</th>{% endfor %}<th>Exit code</th></tr>
        <tr>{% for status in statuses %}<td class="{{ status }}">{{ summary[status] }}</td>{% endfor %}<td>{{ report.exit_code }}</td></tr>
    </table>

    <h2>Resources</h2>
    <table>
        <tr><th>#</th><th>Resource</th><th>Kind</th><th>Status</th><th>Detail</th></tr>
        {% for result in report.results %}
        <tr>
            <td>{{ loop.index }}</td>
            <td>{{ result.resource_id }}</td>
            <td>{{ result.kind }}</td>
            <td class="{{ result.status.value }}">{{ result.status.value|upper }}</td>
            <td>{% if result.error %}{{ result.error.type }}: {{ result.error.message }}{% else %}{{ result.message or "" }}{% endif %}</td>
        </tr>
        {% endfor %}
    </table>

    {% if report.handler_results %}
    <h2>Handlers</h2>
    <table>
        <tr><th>Handler</th><th>Status</th><th>Detail</th></tr>
        {% for handler in report.handler_results %}
        <tr>
            <td>{{ handler.name }}</td>
            <td class="{{ handler.status.value }}">{{ handler.status.value|upper }}</td>
            <td>{{ handler.message or "" }}</td>
        </tr>
        {% endfor %}
    </table>
    {% endif %}
</body>
</html>
"""


def report_records(report: RunReport) -> List[Dict[str, Any]]:
    """Flatten a report into one record per resource and per handler."""
    records = []
    for result in report.results:
        records.append({
            'type': 'resource',
            'run_id': report.run_id,
            'host': report.host,
            'resource_id': result.resource_id,
            'kind': result.kind,
            'status': result.status.value,
            'message': result.message,
            'error_type': result.error.type if result.error else None,
            'error': result.error.message if result.error else None,
            'before': result.before,
            'after': result.after,
            'execution_time_ms': result.execution_time_ms,
        })
    for handler in report.handler_results:
        records.append({
            'type': 'handler',
            'run_id': report.run_id,
            'host': report.host,
            'handler': handler.name,
            'status': handler.status.value,
            'message': handler.message,
            'error_type': handler.error.type if handler.error else None,
            'error': handler.error.message if handler.error else None,
        })
    return records


def write_jsonl(reports: Iterable[RunReport], stream: TextIO) -> None:
    """Write JSON Lines records for each report to a stream."""
    for report in reports:
        for record in report_records(report):
            stream.write(json.dumps(record, default=str, sort_keys=True) + "\n")


class ReportGenerator:
    """Renders stored or fresh run reports to files."""

    FORMATS = ("json", "jsonl", "html")

    def generate_report(self, report: RunReport, format: str = "json",
                        output_path: Optional[str] = None) -> str:
        """
        Generate a report file.

        Args:
            report: Run report to render
            format: Report format (json, jsonl, html)
            output_path: Output file path (auto-generated if None)

        Returns:
            str: Path to generated report file
        """
        format = format.lower()
        if format not in self.FORMATS:
            raise ValueError(f"Unsupported report format: {format}")

        if not output_path:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_path = f"reconcile_report_{timestamp}.{format}"

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        with open(output_file, 'w') as f:
            if format == "jsonl":
                write_jsonl([report], f)
            elif format == "json":
                data = report.model_dump(mode="json")
                data['summary'] = report.summary()
                data['handlers_fired'] = report.handlers_fired
                data['exit_code'] = report.exit_code
                json.dump(data, f, indent=2)
            else:
                f.write(self.render_html(report))

        return str(output_file)

    def render_html(self, report: RunReport) -> str:
        template = Template(HTML_TEMPLATE)
        return template.render(
            report=report,
            summary=report.summary(),
            statuses=[status.value for status in ResultStatus],
            generated_at=datetime.now(timezone.utc).strftime("%B %d, %Y at %I:%M %p UTC"),
        )
