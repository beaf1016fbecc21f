"""
Directive Sheet Parser

Reads priority directives from a CSV or Excel sheet and generates a
priority_tokens YAML file.

Expected columns: contract_address, network, tier, and optionally type
and symbol. Rows with a bad address or tier are logged and skipped.
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import yaml
from loguru import logger

from .models import PriorityDirective, PriorityTier
from .validation import validate_address

COLUMN_ALIASES = {
    'contract': 'contract_address',
    'contractaddress': 'contract_address',
    'address': 'contract_address',
    'chain': 'network',
    'priority': 'tier',
    'standard': 'type',
}


class DirectiveSheetParser:
    """
    Parse a spreadsheet of priority tokens

    Features:
    - CSV and Excel input (pandas)
    - Column names matched case-insensitively, with aliases
    - Blank network means "any network"
    - Blank tier means normal
    """

    def __init__(self, path: str, sheet_name=0):
        self.path = Path(path)
        self.sheet_name = sheet_name
        self.rows: List[Dict] = []
        self.skipped: List[Dict] = []

    def _read(self) -> pd.DataFrame:
        if self.path.suffix.lower() in ('.csv', '.txt'):
            df = pd.read_csv(self.path, dtype=str)
        else:
            df = pd.read_excel(self.path, sheet_name=self.sheet_name, dtype=str)

        columns = {}
        for column in df.columns:
            key = str(column).strip().lower().replace(' ', '_')
            columns[column] = COLUMN_ALIASES.get(key.replace('_', ''), COLUMN_ALIASES.get(key, key))
        return df.rename(columns=columns)

    @staticmethod
    def _cell(row: pd.Series, column: str) -> Optional[str]:
        if column not in row.index:
            return None
        value = row[column]
        if pd.isna(value):
            return None
        value = str(value).strip()
        return value or None

    def parse(self) -> List[PriorityDirective]:
        """
        Parse the sheet

        Returns:
            Directives in sheet order
        """
        logger.info(f"Parsing priority directives from {self.path}")
        df = self._read()
        if 'contract_address' not in df.columns:
            raise ValueError(f"{self.path} has no contract_address column")

        directives = []
        self.rows = []
        self.skipped = []
        for index, row in df.iterrows():
            address = self._cell(row, 'contract_address')
            error = validate_address(address)
            if error:
                logger.warning(f"⚠ Row {index + 2}: {error} ({address})")
                self.skipped.append({'row': index + 2, 'address': address, 'reason': error})
                continue

            tier = (self._cell(row, 'tier') or PriorityTier.NORMAL.value).lower()
            try:
                directive = PriorityDirective(
                    contract_address=address,
                    network=(self._cell(row, 'network') or '').lower() or None,
                    tier=tier,
                )
            except ValueError:
                logger.warning(f"⚠ Row {index + 2}: unknown tier '{tier}'")
                self.skipped.append({'row': index + 2, 'address': address, 'reason': f"unknown tier '{tier}'"})
                continue

            entry = directive.to_dict()
            asset_type = self._cell(row, 'type')
            symbol = self._cell(row, 'symbol')
            if asset_type:
                entry['type'] = asset_type.upper()
            if symbol:
                entry['symbol'] = symbol
            self.rows.append(entry)
            directives.append(directive)

        logger.info(f"✓ Parsed {len(directives)} directive(s), skipped {len(self.skipped)}")
        return directives

    def generate_yaml(self, output_path: str = "priority_tokens.yaml") -> Path:
        """
        Write the parsed directives as YAML

        Returns:
            Output path
        """
        if not self.rows:
            self.parse()

        document = {
            'priority_tokens': self.rows,
            'metadata': {
                'generated_at': datetime.now().isoformat(),
                'source': str(self.path),
                'skipped_rows': len(self.skipped),
            },
        }

        output_path = Path(output_path)
        with open(output_path, 'w') as f:
            yaml.dump(document, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

        logger.info(f"✓ Generated {output_path}")
        return output_path


def load_directives(path: str) -> List[PriorityDirective]:
    """Read a priority_tokens YAML file back into directives"""
    with open(path, 'r') as f:
        document = yaml.safe_load(f) or {}
    return [PriorityDirective.from_dict(entry) for entry in document.get('priority_tokens') or []]
