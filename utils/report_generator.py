# utils/report_generator.py

import html
import json
import logging
from pathlib import Path

from core.duplicate_detection import GroupingResult
from core.types import SimilarityGroup
from utils.file_utils import format_file_size

logger = logging.getLogger(__name__)


class SimilarityReportGenerator:
    """
    Generate JSON or HTML reports for similarity grouping results
    """

    def generate_report(self, result: GroupingResult, output_path: str = "similarity_report.html"):
        """Write the report; the format follows the file extension"""
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() == '.json':
            content = json.dumps(self.build_summary(result), indent=2)
        else:
            content = self._render_html(result)

        with open(path, 'w') as f:
            f.write(content)

        logger.info("Report generated: %s", path)
        return str(path)

    def build_summary(self, result: GroupingResult) -> dict:
        grouped = sum(len(g.member_photo_ids) for g in result.groups)
        summary = {
            'total_photos': len(result.analyses),
            'total_groups': len(result.groups),
            'grouped_photos': grouped,
            'redundant_photos': grouped - len(result.groups),
            'reclaimable_bytes': self._reclaimable_bytes(result),
            'failed_photos': len(result.failures),
        }
        return {'summary': summary, **result.to_dict()}

    def _reclaimable_bytes(self, result: GroupingResult) -> int:
        """Size of every non-representative member"""
        total = 0
        for group in result.groups:
            for photo_id in group.member_photo_ids:
                if photo_id == group.representative_photo_id:
                    continue
                analysis = result.analyses.get(photo_id)
                if analysis is not None:
                    total += int(analysis.feature.metadata.get('size', 0) or 0)
        return total

    def _render_html(self, result: GroupingResult) -> str:
        summary = self.build_summary(result)['summary']
        stats_html = f"""
        <div class="statistics">
            <h2>Similarity Grouping Summary</h2>
            <p><strong>Photos analyzed:</strong> {summary['total_photos']}</p>
            <p><strong>Similarity groups:</strong> {summary['total_groups']}</p>
            <p><strong>Redundant photos:</strong> {summary['redundant_photos']}</p>
            <p><strong>Potential space savings:</strong> {format_file_size(summary['reclaimable_bytes'])}</p>
            <p><strong>Failed photos:</strong> {summary['failed_photos']}</p>
        </div>
        """

        groups_html = "<div class='similarity-groups'>"
        for group in result.groups:
            groups_html += self._create_group_html(group, result)
        groups_html += "</div>"

        final_html = HTML_TEMPLATE.replace("{{STATS}}", stats_html)
        return final_html.replace("{{GROUPS}}", groups_html)

    def _create_group_html(self, group: SimilarityGroup, result: GroupingResult) -> str:
        qualities = result.qualities
        rows = ""
        for photo_id in group.member_photo_ids:
            quality = qualities.get(photo_id)
            score = f"{quality.score:.0f}" if quality is not None else "n/a"
            css = "representative" if photo_id == group.representative_photo_id else "member"
            rows += f"""
                <tr class="{css}">
                    <td>{html.escape(Path(photo_id).name or photo_id)}</td>
                    <td>{score}</td>
                </tr>"""

        return f"""
        <div class="similarity-group">
            <h3>{html.escape(group.id)} ({len(group.member_photo_ids)} photos,
                average similarity {group.average_similarity:.1f})</h3>
            <p>Keep: {html.escape(group.representative_photo_id)}</p>
            <table>
                <tr><th>Photo</th><th>Quality</th></tr>{rows}
            </table>
        </div>
        """


HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <title>Photo Similarity Report</title>
    <style>
        body { font-family: Arial, sans-serif; margin: 20px; }
        .statistics { background: #f0f0f0; padding: 20px; border-radius: 5px; }
        .similarity-group { border: 1px solid #ccc; margin: 20px 0; padding: 15px; }
        .representative { background: #e8f5e9; }
        td, th { padding: 4px 12px; text-align: left; }
    </style>
</head>
<body>
    <h1>Photo Similarity Report</h1>
    {{STATS}}
    {{GROUPS}}
</body>
</html>
"""
