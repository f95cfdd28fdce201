"""
Reporting and Export Module for the Man-hour Planner

Compares estimated, allocated and actual effort per estimate, classifies
progress, and exports the results to PDF, Excel and CSV.
"""

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer, PageBreak
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from datetime import datetime, date, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple
from dataclasses import dataclass, asdict
import logging

from .data_manager import EPSILON, round_hours, parse_date
from .state_manager import StateManager

# Deviations within this percentage count as matching the estimate
NEUTRAL_DEVIATION_PERCENT = 3.0
LOW_DEVIATION_PERCENT = 12.0
MEDIUM_DEVIATION_PERCENT = 35.0

EXPORT_EXTENSIONS = {'pdf': 'pdf', 'excel': 'xlsx', 'csv': 'csv'}


class ProgressStatus(str, Enum):
    COMPLETED = "completed"
    ONTRACK = "ontrack"
    WARNING = "warning"
    EXCEEDED = "exceeded"
    UNKNOWN = "unknown"


STATUS_LABELS = {
    ProgressStatus.COMPLETED: "Completed",
    ProgressStatus.ONTRACK: "On track",
    ProgressStatus.WARNING: "Warning",
    ProgressStatus.EXCEEDED: "Exceeded",
    ProgressStatus.UNKNOWN: "Not set",
}


@dataclass
class DeviationFlag:
    """Deviation of actual effort from the estimate"""
    estimate_id: str
    title: str
    deviation_type: str  # "over_estimate", "under_estimate" or "exact"
    deviation_hours: float
    deviation_percent: Optional[float]
    severity: str  # "none", "low", "medium" or "high"
    description: str


def determine_progress_status(estimated_hours: float, actual_hours: float, remaining_hours: float,
                              warning_threshold: float = 1.2) -> Tuple[ProgressStatus, float]:
    """
    Classify progress from estimate, actual and expected remaining effort.

    Returns:
        (status, eac) where eac is the estimate at completion (actual + remaining)
    """
    eac = round_hours(actual_hours + remaining_hours)

    if remaining_hours <= EPSILON and actual_hours > EPSILON:
        return ProgressStatus.COMPLETED, eac
    if estimated_hours <= EPSILON:
        return ProgressStatus.UNKNOWN, eac
    if eac <= estimated_hours + EPSILON:
        return ProgressStatus.ONTRACK, eac
    if eac <= estimated_hours * warning_threshold + EPSILON:
        return ProgressStatus.WARNING, eac
    return ProgressStatus.EXCEEDED, eac


def generate_deviation_flag(estimate_id: str, title: str, estimated_hours: float,
                            actual_hours: float) -> Optional[DeviationFlag]:
    """Flag how far actual effort is from the estimate; None while nothing is recorded"""
    if actual_hours <= EPSILON:
        return None

    deviation = round_hours(actual_hours - estimated_hours)
    if estimated_hours <= EPSILON:
        return DeviationFlag(
            estimate_id=estimate_id,
            title=title,
            deviation_type="over_estimate",
            deviation_hours=deviation,
            deviation_percent=None,
            severity="high",
            description=f"{actual_hours:.2f}h recorded without an estimate"
        )

    percent = round(deviation / estimated_hours * 100, 1)
    if abs(percent) < NEUTRAL_DEVIATION_PERCENT:
        return DeviationFlag(
            estimate_id=estimate_id,
            title=title,
            deviation_type="exact",
            deviation_hours=deviation,
            deviation_percent=percent,
            severity="none",
            description="Actual matches the estimate"
        )

    deviation_type = "over_estimate" if deviation > 0 else "under_estimate"
    direction = "over" if deviation > 0 else "under"
    if abs(percent) < LOW_DEVIATION_PERCENT:
        severity = "low"
        description = f"Slightly {direction} estimate by {abs(deviation):.2f}h ({percent:+.1f}%)"
    elif abs(percent) < MEDIUM_DEVIATION_PERCENT:
        severity = "medium"
        description = f"Moderately {direction} estimate by {abs(deviation):.2f}h ({percent:+.1f}%)"
    else:
        severity = "high"
        description = f"Significantly {direction} estimate by {abs(deviation):.2f}h ({percent:+.1f}%)"

    return DeviationFlag(
        estimate_id=estimate_id,
        title=title,
        deviation_type=deviation_type,
        deviation_hours=deviation,
        deviation_percent=percent,
        severity=severity,
        description=description
    )


def to_man_days(hours: float, hours_per_man_day: float = 8.0) -> float:
    return round(hours / hours_per_man_day, 2)


def to_man_months(hours: float, hours_per_man_month: float = 160.0) -> float:
    return round(hours / hours_per_man_month, 2)


class ReportGenerator:
    """Main class for generating reports and exports"""

    def __init__(self, manager: StateManager):
        self.manager = manager
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        """Setup custom report styles"""
        self.styles.add(ParagraphStyle(
            name='CustomTitle',
            parent=self.styles['Heading1'],
            fontSize=18,
            spaceAfter=30,
            alignment=1  # Center alignment
        ))

        self.styles.add(ParagraphStyle(
            name='CustomHeading',
            parent=self.styles['Heading2'],
            fontSize=14,
            spaceAfter=12
        ))

    def convert_hours(self, hours: float, unit: str = 'hours') -> float:
        """Convert hours to 'hours', 'man_days' or 'man_months'"""
        settings = self.manager.state.settings
        if unit == 'hours':
            return round_hours(hours)
        if unit == 'man_days':
            return to_man_days(hours, settings.hours_per_man_day)
        if unit == 'man_months':
            return to_man_months(hours, settings.hours_per_man_month)
        raise ValueError(f"Unsupported unit: {unit}")

    def default_date_range(self) -> Tuple[date, date]:
        """First to last allocated date, or today when nothing is allocated"""
        dates = [entry.date for entry in self.manager.state.allocations.values()]
        if not dates:
            today = date.today()
            return today, today
        return min(dates), max(dates)

    def calculate_estimate_stats(self) -> Dict[str, Dict[str, Any]]:
        """Estimated, allocated, actual and remaining effort per estimate"""
        state = self.manager.state
        threshold = state.settings.warning_threshold
        stats = {}

        for estimate in state.ordered_estimates():
            actual = self.manager.actual_tracker.total_for(state, estimate.id)
            allocated = self.manager.engine.allocated_hours(state, estimate.id)
            if estimate.remaining_hours is not None:
                remaining = estimate.remaining_hours
            else:
                remaining = max(0.0, round_hours(estimate.total_hours - actual))

            status, eac = determine_progress_status(estimate.total_hours, actual, remaining, threshold)
            flag = generate_deviation_flag(estimate.id, estimate.title, estimate.total_hours, actual)
            progress = round(actual / eac * 100, 1) if eac > EPSILON else 0.0

            stats[estimate.id] = {
                "title": estimate.title,
                "version": estimate.version,
                "process": estimate.process,
                "start_date": estimate.start_date,
                "parent_id": estimate.parent_id,
                "estimated": estimate.total_hours,
                "allocated": allocated,
                "unallocated": estimate.unallocated_hours,
                "actual": actual,
                "remaining": round_hours(remaining),
                "eac": eac,
                "progress_percent": progress,
                "status": status.value,
                "deviation_flag": asdict(flag) if flag else None,
            }

        return stats

    def get_team_stats(self) -> Dict[str, Any]:
        """Totals across all estimates"""
        stats = self.calculate_estimate_stats()
        status_counts = {status.value: 0 for status in ProgressStatus}
        for estimate_stats in stats.values():
            status_counts[estimate_stats["status"]] += 1

        flags = [s["deviation_flag"] for s in stats.values() if s["deviation_flag"]]
        return {
            "total_estimates": len(stats),
            "total_estimated": round_hours(sum(s["estimated"] for s in stats.values())),
            "total_allocated": round_hours(sum(s["allocated"] for s in stats.values())),
            "total_unallocated": round_hours(sum(s["unallocated"] for s in stats.values())),
            "total_actual": round_hours(sum(s["actual"] for s in stats.values())),
            "total_eac": round_hours(sum(s["eac"] for s in stats.values())),
            "status_counts": status_counts,
            "overcommitted_dates": len(self.manager.engine.overcommitted_dates(self.manager.state)),
            "high_severity_deviations": [f for f in flags if f["severity"] == "high"],
            "medium_severity_deviations": [f for f in flags if f["severity"] == "medium"],
            "low_severity_deviations": [f for f in flags if f["severity"] == "low"],
        }

    def create_comparison_dataframe(self, unit: str = 'hours') -> pd.DataFrame:
        """Estimate vs. actual comparison, one row per estimate"""
        data = []
        for estimate_id, stats in self.calculate_estimate_stats().items():
            flag = stats["deviation_flag"] or {}
            data.append({
                'ID': estimate_id,
                'Title': stats["title"],
                'Version': stats["version"],
                'Process': stats["process"],
                'Start_Date': stats["start_date"].isoformat(),
                'Estimated': self.convert_hours(stats["estimated"], unit),
                'Allocated': self.convert_hours(stats["allocated"], unit),
                'Unallocated': self.convert_hours(stats["unallocated"], unit),
                'Actual': self.convert_hours(stats["actual"], unit),
                'Remaining': self.convert_hours(stats["remaining"], unit),
                'EAC': self.convert_hours(stats["eac"], unit),
                'Progress_Percent': stats["progress_percent"],
                'Status': STATUS_LABELS[ProgressStatus(stats["status"])],
                'Deviation_Percent': flag.get('deviation_percent'),
                'Deviation_Severity': flag.get('severity', ''),
                'Deviation_Description': flag.get('description', ''),
            })
        return pd.DataFrame(data)

    def create_group_summary_dataframe(self, by: str = 'version', unit: str = 'hours') -> pd.DataFrame:
        """Estimated, actual and EAC totals per version or process label"""
        if by not in ('version', 'process'):
            raise ValueError(f"Unsupported grouping: {by}")

        column = by.capitalize()
        df = self.create_comparison_dataframe(unit)
        if df.empty:
            return pd.DataFrame(columns=[column, 'Estimates', 'Estimated', 'Actual', 'EAC'])

        summary = df.groupby(column, sort=True).agg(
            Estimates=('ID', 'count'),
            Estimated=('Estimated', 'sum'),
            Actual=('Actual', 'sum'),
            EAC=('EAC', 'sum'),
        ).reset_index()
        return summary.round(2)

    def create_allocation_grid_dataframe(self, start: Optional[Any] = None,
                                         end: Optional[Any] = None) -> pd.DataFrame:
        """Allocated hours with one row per estimate and one column per date"""
        default_start, default_end = self.default_date_range()
        start = parse_date(start) if start is not None else default_start
        end = parse_date(end) if end is not None else default_end

        days = []
        day = start
        while day <= end:
            days.append(day)
            day += timedelta(days=1)

        state = self.manager.state
        rows = []
        for estimate in state.ordered_estimates():
            grid = self.manager.engine.allocation_grid_for(state, estimate.id)
            row = {'ID': estimate.id, 'Title': estimate.title}
            for day in days:
                entry = grid.get(day)
                row[day.isoformat()] = entry.amount if entry else 0.0
            rows.append(row)

        capacity_row = {'ID': '', 'Title': 'Capacity'}
        for day in days:
            capacity_row[day.isoformat()] = self.manager.calendar.capacity_of(state, day)
        rows.append(capacity_row)

        return pd.DataFrame(rows, columns=['ID', 'Title'] + [d.isoformat() for d in days])

    def create_monthly_dataframe(self, unit: str = 'hours') -> pd.DataFrame:
        """Allocated effort per estimate per month"""
        state = self.manager.state
        totals: Dict[str, Dict[str, float]] = {}
        months = set()
        for entry in state.allocations.values():
            month_key = entry.date.strftime("%Y-%m")
            months.add(month_key)
            by_month = totals.setdefault(entry.estimate_id, {})
            by_month[month_key] = by_month.get(month_key, 0.0) + entry.amount

        month_columns = sorted(months)
        rows = []
        for estimate in state.ordered_estimates():
            row = {'ID': estimate.id, 'Title': estimate.title}
            for month_key in month_columns:
                row[month_key] = self.convert_hours(totals.get(estimate.id, {}).get(month_key, 0.0), unit)
            rows.append(row)
        return pd.DataFrame(rows, columns=['ID', 'Title'] + month_columns)

    def create_capacity_dataframe(self, start: Optional[Any] = None,
                                  end: Optional[Any] = None) -> pd.DataFrame:
        """Daily capacity, allocation and blocks"""
        default_start, default_end = self.default_date_range()
        start = parse_date(start) if start is not None else default_start
        end = parse_date(end) if end is not None else default_end

        state = self.manager.state
        calendar_model = self.manager.calendar
        data = []
        day = start
        while day <= end:
            capacity = calendar_model.capacity_of(state, day)
            allocated = self.manager.engine.allocated_on(state, day)
            holiday = next((h.name for h in state.company_holidays.values() if h.covers(day)), '')
            data.append({
                'Date': day.isoformat(),
                'Day': day.strftime("%A"),
                'Capacity': capacity,
                'Allocated': allocated,
                'Free': round_hours(capacity - allocated),
                'Vacation': round_hours(sum(b.amount for b in calendar_model.blocks_on(state, day)
                                            if b.kind == 'vacation')),
                'Other_Work': round_hours(sum(b.amount for b in calendar_model.blocks_on(state, day)
                                              if b.kind == 'other_work')),
                'Holiday': holiday,
            })
            day += timedelta(days=1)
        return pd.DataFrame(data)

    def export_report_pdf(self, output_path: str, unit: str = 'hours') -> bool:
        """Export the estimate vs. actual report to PDF"""
        try:
            doc = SimpleDocTemplate(
                output_path,
                pagesize=landscape(A4),
                rightMargin=0.5*inch,
                leftMargin=0.5*inch,
                topMargin=0.5*inch,
                bottomMargin=0.5*inch
            )

            story = []
            title = Paragraph(f"Man-hour Report - {date.today().isoformat()}", self.styles['CustomTitle'])
            story.append(title)
            story.append(Spacer(1, 20))

            story.append(self._create_summary_table(unit))
            story.append(Spacer(1, 20))

            story.append(Paragraph("Estimate vs. Actual", self.styles['CustomHeading']))
            story.append(self._create_comparison_table(unit))

            monthly_df = self.create_monthly_dataframe(unit)
            if len(monthly_df.columns) > 2:
                story.append(PageBreak())
                story.append(Paragraph("Monthly Allocation", self.styles['CustomHeading']))
                story.append(self._dataframe_to_table(monthly_df))

            doc.build(story)
            return True

        except Exception as e:
            logging.error(f"Error creating PDF: {e}", exc_info=True)
            return False

    def _create_summary_table(self, unit: str) -> Table:
        team_stats = self.get_team_stats()
        counts = team_stats["status_counts"]
        summary_data = [
            ['Summary', ''],
            ['Estimates', str(team_stats['total_estimates'])],
            ['Estimated', f"{self.convert_hours(team_stats['total_estimated'], unit):.2f}"],
            ['Actual', f"{self.convert_hours(team_stats['total_actual'], unit):.2f}"],
            ['EAC', f"{self.convert_hours(team_stats['total_eac'], unit):.2f}"],
            ['Unallocated', f"{self.convert_hours(team_stats['total_unallocated'], unit):.2f}"],
            ['Completed / On track / Warning / Exceeded',
             f"{counts['completed']} / {counts['ontrack']} / {counts['warning']} / {counts['exceeded']}"],
        ]

        summary_table = Table(summary_data, colWidths=[3.5*inch, 2*inch])
        summary_table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.lightblue),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('GRID', (0, 0), (-1, -1), 1, colors.black),
        ]))
        return summary_table

    def _create_comparison_table(self, unit: str) -> Table:
        stats = self.calculate_estimate_stats()
        data = [['Title', 'Version', 'Process', 'Estimated', 'Actual', 'Remaining', 'EAC', 'Status', 'Deviation']]
        for estimate_stats in stats.values():
            flag = estimate_stats["deviation_flag"]
            data.append([
                Paragraph(estimate_stats["title"], self.styles['Normal']),
                estimate_stats["version"],
                estimate_stats["process"],
                f"{self.convert_hours(estimate_stats['estimated'], unit):.2f}",
                f"{self.convert_hours(estimate_stats['actual'], unit):.2f}",
                f"{self.convert_hours(estimate_stats['remaining'], unit):.2f}",
                f"{self.convert_hours(estimate_stats['eac'], unit):.2f}",
                STATUS_LABELS[ProgressStatus(estimate_stats["status"])],
                Paragraph(flag['description'] if flag else '', self.styles['Normal']),
            ])

        table = Table(data, colWidths=[2.4*inch, 0.8*inch, 0.7*inch, 0.8*inch, 0.8*inch,
                                       0.8*inch, 0.8*inch, 0.8*inch, 2.4*inch])
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
            ('ALIGN', (1, 0), (-2, -1), 'CENTER'),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('GRID', (0, 0), (-1, -1), 1, colors.black),
            ('FONTSIZE', (0, 0), (-1, -1), 8),
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ]))

        # Color code rows by deviation severity
        for i, estimate_stats in enumerate(stats.values(), 1):
            flag = estimate_stats["deviation_flag"]
            if not flag:
                continue
            if flag['severity'] == 'high':
                bg_color = colors.lightcoral
            elif flag['severity'] == 'medium':
                bg_color = colors.orange
            elif flag['severity'] == 'low':
                bg_color = colors.lightyellow
            else:
                bg_color = colors.white
            table.setStyle(TableStyle([
                ('BACKGROUND', (0, i), (-1, i), bg_color)
            ]))

        return table

    def _dataframe_to_table(self, df: pd.DataFrame) -> Table:
        data = [list(df.columns)]
        for row in df.itertuples(index=False):
            data.append([f"{value:.2f}" if isinstance(value, float) else str(value) for value in row])

        table = Table(data, repeatRows=1)
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('GRID', (0, 0), (-1, -1), 1, colors.black),
            ('FONTSIZE', (0, 0), (-1, -1), 7),
        ]))
        return table

    def export_report_excel(self, output_path: str, unit: str = 'hours',
                            start: Optional[Any] = None, end: Optional[Any] = None) -> bool:
        """Export comparison, allocation grid and capacity sheets to Excel"""
        try:
            with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
                self.create_comparison_dataframe(unit).to_excel(writer, sheet_name='Comparison', index=False)
                self.create_monthly_dataframe(unit).to_excel(writer, sheet_name='Monthly', index=False)
                self.create_group_summary_dataframe('version', unit).to_excel(writer, sheet_name='By Version', index=False)
                self.create_group_summary_dataframe('process', unit).to_excel(writer, sheet_name='By Process', index=False)
                self.create_allocation_grid_dataframe(start, end).to_excel(writer, sheet_name='Allocations', index=False)
                self.create_capacity_dataframe(start, end).to_excel(writer, sheet_name='Capacity', index=False)

                self._format_excel_worksheets(writer)

            return True

        except Exception as e:
            logging.error(f"Error exporting to Excel: {e}", exc_info=True)
            return False

    def _format_excel_worksheets(self, writer):
        """Format Excel worksheets"""
        from openpyxl.styles import PatternFill, Font

        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        header_font = Font(color="FFFFFF", bold=True)

        for worksheet in writer.sheets.values():
            for cell in worksheet[1]:
                cell.fill = header_fill
                cell.font = header_font

            # Auto-adjust column widths
            for column in worksheet.columns:
                max_length = max((len(str(cell.value)) for cell in column if cell.value is not None), default=0)
                worksheet.column_dimensions[column[0].column_letter].width = min(max_length + 2, 50)

    def export_report_csv(self, output_path: str, unit: str = 'hours') -> bool:
        """Export the estimate vs. actual comparison to CSV"""
        try:
            self.create_comparison_dataframe(unit).to_csv(output_path, index=False)
            return True

        except Exception as e:
            logging.error(f"Error exporting to CSV: {e}", exc_info=True)
            return False

    def create_dashboard_summary(self) -> str:
        """Create text summary for dashboard display"""
        settings = self.manager.state.settings
        team_stats = self.get_team_stats()
        counts = team_stats["status_counts"]
        high_severity = team_stats["high_severity_deviations"]
        unallocated = self.manager.unallocated()

        summary = f"""
MAN-HOUR SUMMARY - {date.today().isoformat()}

Effort:
• Estimates: {team_stats['total_estimates']}
• Estimated: {team_stats['total_estimated']:.2f}h ({to_man_days(team_stats['total_estimated'], settings.hours_per_man_day):.2f} man-days, {to_man_months(team_stats['total_estimated'], settings.hours_per_man_month):.2f} man-months)
• Actual: {team_stats['total_actual']:.2f}h
• Estimate at completion: {team_stats['total_eac']:.2f}h

Progress:
• Completed: {counts['completed']}
• On track: {counts['ontrack']}
• Warning: {counts['warning']}
• Exceeded: {counts['exceeded']}
• Not set: {counts['unknown']}

Deviation Flags:
• High Severity: {len(high_severity)}
• Medium Severity: {len(team_stats['medium_severity_deviations'])}
• Low Severity: {len(team_stats['low_severity_deviations'])}

Issues:
• Unallocated Hours: {team_stats['total_unallocated']:.2f}h across {len(unallocated)} estimate(s)
• Overcommitted Dates: {team_stats['overcommitted_dates']}
        """

        if high_severity:
            summary += "\n\nHIGH SEVERITY DEVIATIONS:"
            for flag in high_severity:
                summary += f"\n• {flag['title']}: {flag['description']}"

        return summary.strip()


class ExportManager:
    """Manager class for handling all export operations"""

    def __init__(self, manager: StateManager):
        self.manager = manager
        self.report_generator = ReportGenerator(manager)

    def export_report(self, format_type: str, output_path: str, unit: str = 'hours') -> bool:
        """Export the report in the given format"""
        if format_type.lower() == 'pdf':
            return self.report_generator.export_report_pdf(output_path, unit)
        elif format_type.lower() == 'excel':
            return self.report_generator.export_report_excel(output_path, unit)
        elif format_type.lower() == 'csv':
            return self.report_generator.export_report_csv(output_path, unit)
        else:
            raise ValueError(f"Unsupported format: {format_type}")

    def get_default_filename(self, format_type: str) -> str:
        """Generate default filename for export"""
        extension = EXPORT_EXTENSIONS.get(format_type.lower())
        if extension is None:
            raise ValueError(f"Unsupported format: {format_type}")
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"manhour_report_{timestamp}.{extension}"

    def batch_export(self, output_dir: str, formats: List[str] = None,
                     unit: str = 'hours') -> Dict[str, bool]:
        """Export the report in multiple formats"""
        if formats is None:
            formats = ['pdf', 'excel', 'csv']

        results = {}
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        for format_type in formats:
            try:
                file_path = output_path / self.get_default_filename(format_type)
                results[format_type] = self.export_report(format_type, str(file_path), unit)
            except ValueError as e:
                logging.error(f"Error exporting {format_type}: {e}", exc_info=True)
                results[format_type] = False

        return results
