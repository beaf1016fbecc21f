"""Priority directives read from a spreadsheet"""

import pytest
import yaml

from asset_rescue.directive_sheet import DirectiveSheetParser, load_directives
from asset_rescue.models import PriorityTier

from conftest import TOKEN_A, TOKEN_B, TOKEN_C

SHEET = (
    "Contract Address,Chain,Priority,Standard,Symbol\n"
    f"{TOKEN_A},Base,maximum,erc20,AAA\n"
    f"{TOKEN_B},,,,\n"
    "0x1234,base,normal,,\n"
    f"{TOKEN_C},linea,urgent,,\n"
)


@pytest.fixture
def sheet_path(tmp_path):
    path = tmp_path / 'priority.csv'
    path.write_text(SHEET)
    return path


def test_parse_maps_aliases_and_defaults(sheet_path):
    parser = DirectiveSheetParser(str(sheet_path))
    directives = parser.parse()

    assert [d.contract_address for d in directives] == [TOKEN_A, TOKEN_B]
    assert directives[0].network == 'base'
    assert directives[0].tier is PriorityTier.MAXIMUM
    assert directives[1].network is None
    assert directives[1].tier is PriorityTier.NORMAL
    assert parser.rows[0]['type'] == 'ERC20'
    assert parser.rows[0]['symbol'] == 'AAA'


def test_bad_rows_are_skipped_with_their_row_number(sheet_path):
    parser = DirectiveSheetParser(str(sheet_path))
    parser.parse()
    assert [s['row'] for s in parser.skipped] == [4, 5]
    assert "unknown tier 'urgent'" in parser.skipped[1]['reason']


def test_missing_address_column(tmp_path):
    path = tmp_path / 'bad.csv'
    path.write_text("symbol,network\nAAA,base\n")
    with pytest.raises(ValueError):
        DirectiveSheetParser(str(path)).parse()


def test_generated_yaml_loads_back(sheet_path, tmp_path):
    output = DirectiveSheetParser(str(sheet_path)).generate_yaml(str(tmp_path / 'priority_tokens.yaml'))

    document = yaml.safe_load(output.read_text())
    assert document['metadata']['skipped_rows'] == 2

    directives = load_directives(str(output))
    assert [(d.contract_address, d.network, d.tier.value) for d in directives] == [
        (TOKEN_A, 'base', 'maximum'), (TOKEN_B, None, 'normal'),
    ]
