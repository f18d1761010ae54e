"""Abstract base class for remote data source collectors.

Raw dumps written by collectors follow one layout:
- snake_case column names, UTF-8 encoding
- Stored in data/raw/{source}/
- File naming: {source}_{dataset}_{YYYYMMDD}.csv

Collectors only talk to the remote source. Normalisation into store rows is
handled by preprocessors.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

import pandas as pd

from ledger_sync.shared.utils import setup_logger


class BaseCollector(ABC):
    """Base class for all data collectors.

    Subclasses must define:
        SOURCE_NAME (str): identifier used in file naming (e.g. "partner_financials").

    Subclasses must implement:
        health_check(): verify the source is reachable.

    The export_csv() method handles raw CSV naming automatically.
    """

    SOURCE_NAME: str

    def __init__(self, output_dir: Path, log_file: Path | None = None) -> None:
        """Initialize the collector.

        Args:
            output_dir: Directory for raw CSV exports (created if missing).
            log_file: Optional path for file-based logging.
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = setup_logger(self.__class__.__name__, log_file)

    @abstractmethod
    def health_check(self, *args, **kwargs) -> bool:
        """Verify the data source is reachable and responding.

        Returns:
            True if the source is available, False otherwise.
        """
        ...

    def export_csv(self, data: pd.DataFrame | list[dict], dataset_name: str) -> Path:
        """Export records to a raw CSV file.

        File path: {output_dir}/{SOURCE_NAME}_{dataset_name}_{YYYYMMDD}.csv

        Args:
            data: DataFrame or list of row dicts to export.
            dataset_name: Dataset identifier (e.g. "sales_2024-01-01").

        Returns:
            Path to the written file.

        Raises:
            ValueError: If there is nothing to export.
        """
        df = data if isinstance(data, pd.DataFrame) else pd.DataFrame(data)
        if df.empty:
            raise ValueError(f"Cannot export empty DataFrame for '{dataset_name}'")

        date_str = datetime.now().strftime("%Y%m%d")
        path = self.output_dir / f"{self.SOURCE_NAME}_{dataset_name}_{date_str}.csv"
        df.to_csv(path, index=False, encoding="utf-8")
        self.logger.info("Exported %d records to %s", len(df), path)
        return path
