"""Operator reports: price workbook and scheduler health dashboard.

The Excel export is for distributing a day's prices; the HTML dashboard is a
standalone Plotly page showing per-job success and failure counts, readable
without any tooling beyond a browser.
"""

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from config.settings import GlobalConfig, get_config
from nepsewatch.exceptions import ReportGenerationError
from nepsewatch.jobs import JobStat
from nepsewatch.logger import get_logger
from nepsewatch.models import PriceRecord

log = get_logger(__name__)

PRICE_COLUMNS = [
    "symbol",
    "business_date",
    "open",
    "high",
    "low",
    "close",
    "previous_close",
    "change",
    "percent_change",
    "volume",
    "turnover",
    "total_trades",
]

TOP_MOVERS = 10


class ReportGenerator:
    """Generates Excel and HTML reports.

    Attributes:
        config: GlobalConfig instance for output paths.
        _timestamp: Report generation timestamp for file naming.

    Example:
        reporter = ReportGenerator()
        excel_path = reporter.generate_price_excel(sink.load_prices())
        html_path = reporter.generate_health_dashboard(scheduler.health().stats)
    """

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self._timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")

    def _ensure_output_dir(self) -> Path:
        """Ensure output directory exists and return path.

        Raises:
            ReportGenerationError: If directory cannot be created.
        """
        try:
            self.config.output_dir.mkdir(parents=True, exist_ok=True)
            return self.config.output_dir
        except OSError as exc:
            raise ReportGenerationError(
                report_type="output_directory",
                reason=f"Cannot create output directory: {exc}",
                output_path=str(self.config.output_dir),
            ) from exc

    @staticmethod
    def prices_to_dataframe(records: Sequence[PriceRecord]) -> pd.DataFrame:
        rows = [record.model_dump(include=set(PRICE_COLUMNS)) for record in records]
        return pd.DataFrame(rows, columns=PRICE_COLUMNS)

    def generate_price_excel(
        self,
        records: Sequence[PriceRecord],
        filename: str | None = None,
    ) -> Path:
        """Write prices to a workbook with Prices, Summary and Top Movers sheets.

        Args:
            records: Canonical price records, typically one business date.
            filename: Optional custom filename (without extension).

        Returns:
            Path to the generated Excel file.

        Raises:
            ReportGenerationError: If there are no records or writing fails.
        """
        output_dir = self._ensure_output_dir()
        filename = filename or f"nepsewatch_prices_{self._timestamp}"
        output_path = output_dir / f"{filename}.xlsx"

        if not records:
            raise ReportGenerationError(
                report_type="Excel",
                reason="No price records to export",
                output_path=str(output_path),
            )

        log.info("Generating Excel report", output_path=str(output_path), records=len(records))

        try:
            df = self.prices_to_dataframe(records).sort_values("symbol")

            with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
                df.to_excel(writer, sheet_name="Prices", index=False)
                pd.DataFrame([self._price_summary(df)]).to_excel(writer, sheet_name="Summary", index=False)
                self._top_movers(df).to_excel(writer, sheet_name="Top Movers", index=False)

        except Exception as exc:
            raise ReportGenerationError(
                report_type="Excel",
                reason=str(exc),
                output_path=str(output_path),
            ) from exc

        log.info("Excel report generated", output_path=str(output_path))
        return output_path

    def _price_summary(self, df: pd.DataFrame) -> dict[str, Any]:
        dates = sorted({str(value) for value in df["business_date"]})
        return {
            "Report Generated": datetime.now(UTC).isoformat(),
            "Business Dates": ", ".join(dates),
            "Instruments": len(df),
            "Advanced": int((df["change"] > 0).sum()),
            "Declined": int((df["change"] < 0).sum()),
            "Unchanged": int((df["change"] == 0).sum()),
            "Total Turnover": float(df["turnover"].sum()),
            "Total Volume": int(df["volume"].sum()),
        }

    def _top_movers(self, df: pd.DataFrame) -> pd.DataFrame:
        columns = ["symbol", "close", "change", "percent_change"]
        gainers = df.nlargest(TOP_MOVERS, "percent_change")[columns].assign(side="gainer")
        losers = df.nsmallest(TOP_MOVERS, "percent_change")[columns].assign(side="loser")
        return pd.concat([gainers, losers[losers["percent_change"] < 0]], ignore_index=True)

    def generate_health_dashboard(
        self,
        stats: Mapping[str, JobStat],
        filename: str | None = None,
    ) -> Path:
        """Standalone HTML page with lifetime and today's counts per job key.

        Raises:
            ReportGenerationError: If there are no stats or writing fails.
        """
        output_dir = self._ensure_output_dir()
        filename = filename or f"nepsewatch_health_{self._timestamp}"
        output_path = output_dir / f"{filename}.html"

        if not stats:
            raise ReportGenerationError(
                report_type="Dashboard",
                reason="No job stats available for visualization",
                output_path=str(output_path),
            )

        log.info("Generating health dashboard", output_path=str(output_path))

        try:
            keys = list(stats)
            fig = make_subplots(
                rows=1,
                cols=2,
                subplot_titles=("Lifetime Runs", "Today"),
                horizontal_spacing=0.1,
            )

            for col, (success_field, fail_field) in enumerate(
                [("success_count", "fail_count"), ("today_success_count", "today_fail_count")],
                start=1,
            ):
                fig.add_trace(
                    go.Bar(
                        x=keys,
                        y=[getattr(stats[key], success_field) for key in keys],
                        name="Success",
                        marker_color="#27ae60",
                        showlegend=col == 1,
                    ),
                    row=1,
                    col=col,
                )
                fig.add_trace(
                    go.Bar(
                        x=keys,
                        y=[getattr(stats[key], fail_field) for key in keys],
                        name="Failed",
                        marker_color="#e74c3c",
                        showlegend=col == 1,
                    ),
                    row=1,
                    col=col,
                )

            statuses = " | ".join(f"{key}: {stats[key].status.value}" for key in keys)
            fig.update_layout(
                title={
                    "text": (
                        f"<b>NepseWatch Scheduler Health</b><br>"
                        f"<sup>{statuses} | "
                        f"Generated: {datetime.now(UTC).strftime('%Y-%m-%d %H:%M UTC')}</sup>"
                    ),
                    "x": 0.5,
                    "xanchor": "center",
                },
                barmode="group",
                height=500,
                template="plotly_white",
                font={"family": "Arial, sans-serif"},
            )

            fig.write_html(str(output_path), include_plotlyjs=True, full_html=True)

        except Exception as exc:
            raise ReportGenerationError(
                report_type="Dashboard",
                reason=str(exc),
                output_path=str(output_path),
            ) from exc

        log.info("Health dashboard generated", output_path=str(output_path), jobs=len(keys))
        return output_path
