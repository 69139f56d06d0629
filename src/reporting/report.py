"""Run reporting: console summary plus JSON/markdown report files."""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from stack_opr.executor import FAILED, SKIPPED, SUCCEEDED, UNCHANGED, RunResult

STATUS_MARKS = {SUCCEEDED: '✓', FAILED: '✗', SKIPPED: '-', UNCHANGED: '='}


def format_summary(result: RunResult, verb: str = 'apply') -> str:
    """Render the user-visible summary of a run.

    Lists succeeded, failed and skipped resources by address, with the
    provider error message for each failure.
    """
    duration = result.duration or 0.0
    lines = [
        "",
        f"{verb.capitalize()} {result.status.replace('_', ' ')}: {result.stack_name} "
        f"({len(result.succeeded)} succeeded, {len(result.failed)} failed, "
        f"{len(result.skipped)} skipped, {duration:.1f}s)",
    ]
    for title, outcomes in (('Succeeded', result.succeeded),
                            ('Failed', result.failed),
                            ('Skipped', result.skipped),
                            ('Unchanged', result.unchanged)):
        if not outcomes:
            continue
        lines.append(f"  {title}:")
        for o in outcomes:
            line = f"    {STATUS_MARKS[o.status]} {o.action} {o.address}"
            if o.status == SUCCEEDED and o.attempts > 1:
                line += f" ({o.attempts} attempts)"
            lines.append(line)
            if o.status == FAILED and o.error:
                lines.append(f"        {o.error}")
    return '\n'.join(lines)


@dataclass
class RunReport:
    """Writes a run's outcome to report files."""
    result: RunResult
    report_dir: Path
    verb: str = 'apply'

    def write(self) -> list[Path]:
        """Write JSON and markdown reports; return their paths."""
        self.report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(), self._write_markdown()]

    def _started(self) -> datetime:
        if self.result.started_at:
            return datetime.fromtimestamp(self.result.started_at)
        return datetime.now()

    def _write_json(self) -> Path:
        """Write JSON report."""
        data = self.result.to_dict()
        data['verb'] = self.verb
        data['started_at'] = self._started().isoformat()
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        """Write markdown report."""
        duration = self.result.duration or 0.0
        lines = [
            f"# {self.verb} {self.result.stack_name}",
            "",
            f"**Status**: {self.result.status}",
            f"**Date**: {self._started().strftime('%Y-%m-%d %H:%M:%S')}",
            f"**Duration**: {duration:.1f}s",
            "",
            "## Operations",
            "",
            "| Resource | Action | Status | Attempts | Message |",
            "|----------|--------|--------|----------|---------|",
        ]
        for o in self.result.outcomes.values():
            status_emoji = {SUCCEEDED: '✅', FAILED: '❌', SKIPPED: '⏭️',
                            UNCHANGED: '➖'}.get(o.status, '❓')
            message = (o.error or '').replace('|', '\\|')
            lines.append(f"| {o.address} | {o.action} | {status_emoji} {o.status} "
                         f"| {o.attempts} | {message} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename: {timestamp}.{verb}.{status}.{ext}."""
        timestamp = self._started().strftime('%Y%m%d-%H%M%S')
        return self.report_dir / f"{timestamp}.{self.verb}.{self.result.status}.{ext}"
