from __future__ import annotations

import csv
import io
import json
import re
from typing import Dict

from app.schemas.analysis import FunnelAnalysis

CSV_FIELDS = [
    "stepName",
    "users",
    "conversionRate",
    "dropoffRate",
    "avgTimeToNext",
    "baselineRate",
    "filteredRate",
    "conversionLiftPct",
]


def funnel_csv(analysis: FunnelAnalysis) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_FIELDS)
    for step in analysis.steps:
        writer.writerow([
            step.step_name,
            step.users,
            step.conversion_rate,
            step.dropoff_rate,
            "" if step.avg_time_to_next is None else step.avg_time_to_next,
            analysis.baseline_rate,
            analysis.filtered_rate,
            analysis.conversion_lift_pct,
        ])
    return output.getvalue()


def funnel_csv_headers(analysis: FunnelAnalysis) -> Dict[str, str]:
    safe = re.sub(r"[^a-z0-9_-]+", "_", analysis.funnel_name, flags=re.IGNORECASE)
    headers = {"Content-Disposition": f'attachment; filename="funnel_{safe}.csv"'}
    if analysis.filters_applied:
        headers.update({
            "X-Filters-Applied": "true",
            "X-Filter-Summary": json.dumps(analysis.filters),
            "X-Baseline-Rate": f"{analysis.baseline_rate:.2f}",
            "X-Filtered-Rate": f"{analysis.filtered_rate:.2f}",
            "X-Conversion-Lift": f"{analysis.conversion_lift_pct:.2f}",
        })
    return headers
