# -*- coding: utf-8 -*-
"""
Credential storage for flow-lanes

Lanes are saved as rows with the columns
name, sessionToken, cookies, authorization, proxy, projectId, sceneId, savedAt
either in a JSON list (tokens.txt) or in an Excel sheet (tokens.xlsx).
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font

from config import AppConfig, app_config
from models import CredentialRecord

logger = logging.getLogger(__name__)

COLUMNS = ["name", "sessionToken", "cookies", "authorization", "proxy", "projectId", "sceneId", "savedAt"]

COLUMN_WIDTHS = {
    "A": 16,   # name
    "B": 40,   # sessionToken
    "C": 60,   # cookies
    "D": 40,   # authorization
    "E": 30,   # proxy
    "F": 38,   # projectId
    "G": 38,   # sceneId
    "H": 22,   # savedAt
}


class CredentialStore:
    """Base store: subclasses implement _read_rows/_write_rows"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read_rows(self) -> List[dict]:
        raise NotImplementedError

    def _write_rows(self, rows: List[dict]):
        raise NotImplementedError

    def list_all(self) -> List[CredentialRecord]:
        records = []
        for index, row in enumerate(self._read_rows()):
            try:
                records.append(CredentialRecord.from_dict(row))
            except ValueError as e:
                logger.warning(f"[Store] Skipping row {index + 1} in {self.path.name}: {e}")
        return records

    def find_by_name(self, name: str) -> Optional[CredentialRecord]:
        for record in self.list_all():
            if record.name == name:
                return record
        return None

    def save(self, record: CredentialRecord) -> CredentialRecord:
        """Insert or replace the row with the same name"""
        if record.saved_at is None:
            record.saved_at = datetime.utcnow()
        rows = [r for r in self._read_rows() if str(r.get("name") or "") != record.name]
        rows.append(record.to_storage_row())
        self._write_rows(rows)
        logger.info(f"[Store] Saved lane '{record.name}' to {self.path.name}")
        return record

    def delete(self, name: str) -> bool:
        rows = self._read_rows()
        kept = [r for r in rows if str(r.get("name") or "") != name]
        if len(kept) == len(rows):
            return False
        self._write_rows(kept)
        logger.info(f"[Store] Deleted lane '{name}' from {self.path.name}")
        return True


class JsonCredentialStore(CredentialStore):
    """JSON array of rows"""

    def _read_rows(self) -> List[dict]:
        if not self.path.exists():
            return []
        text = self.path.read_text(encoding="utf-8").strip()
        if not text:
            return []
        data = json.loads(text)
        if isinstance(data, dict):
            data = [data]
        return [row for row in data if isinstance(row, dict)]

    def _write_rows(self, rows: List[dict]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(rows, indent=2, ensure_ascii=False), encoding="utf-8")


class XlsxCredentialStore(CredentialStore):
    """First sheet, header row followed by one row per lane"""

    def _read_rows(self) -> List[dict]:
        if not self.path.exists():
            return []
        wb = load_workbook(self.path, read_only=True)
        try:
            ws = wb.active
            rows = list(ws.iter_rows(values_only=True))
        finally:
            wb.close()
        if not rows:
            return []

        header = [str(cell).strip() if cell is not None else "" for cell in rows[0]]
        result = []
        for values in rows[1:]:
            if not values or all(v is None or v == "" for v in values):
                continue
            row = {}
            for key, value in zip(header, values):
                if key:
                    row[key] = "" if value is None else value
            result.append(row)
        return result

    def _write_rows(self, rows: List[dict]):
        wb = Workbook()
        ws = wb.active
        ws.title = "Tokens"

        for col, header in enumerate(COLUMNS, start=1):
            cell = ws.cell(row=1, column=col, value=header)
            cell.font = Font(bold=True)

        for row_index, row in enumerate(rows, start=2):
            for col, key in enumerate(COLUMNS, start=1):
                value = row.get(key, "")
                if isinstance(value, datetime):
                    value = value.isoformat()
                ws.cell(row=row_index, column=col, value=value if value is not None else "")

        for column, width in COLUMN_WIDTHS.items():
            ws.column_dimensions[column].width = width

        self.path.parent.mkdir(parents=True, exist_ok=True)
        wb.save(self.path)


def open_credential_store(config: AppConfig = None) -> CredentialStore:
    """Prefer the Excel file when it exists, otherwise use the JSON file"""
    config = config or app_config
    if config.tokens_xlsx_file.exists():
        logger.info(f"[Store] Using {config.tokens_xlsx_file}")
        return XlsxCredentialStore(config.tokens_xlsx_file)
    logger.info(f"[Store] Using {config.tokens_file}")
    return JsonCredentialStore(config.tokens_file)
