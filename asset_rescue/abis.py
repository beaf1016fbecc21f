"""
Contract ABIs and event topics used by discovery and transfers
"""

from typing import Dict, List


def _fn(name: str, inputs: List[str], outputs: List[str], mutability: str = "view") -> Dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(inputs)],
        "outputs": [{"name": "", "type": t} for t in outputs],
    }


ERC20_ABI = [
    _fn("name", [], ["string"]),
    _fn("symbol", [], ["string"]),
    _fn("decimals", [], ["uint8"]),
    _fn("totalSupply", [], ["uint256"]),
    _fn("balanceOf", ["address"], ["uint256"]),
    _fn("allowance", ["address", "address"], ["uint256"]),
    _fn("transfer", ["address", "uint256"], ["bool"], "nonpayable"),
    _fn("approve", ["address", "uint256"], ["bool"], "nonpayable"),
    _fn("transferFrom", ["address", "address", "uint256"], ["bool"], "nonpayable"),
]

# Legacy tokens (MKR style) return bytes32 for name/symbol
ERC20_BYTES32_ABI = [
    _fn("name", [], ["bytes32"]),
    _fn("symbol", [], ["bytes32"]),
]

ERC721_ABI = [
    _fn("name", [], ["string"]),
    _fn("symbol", [], ["string"]),
    _fn("totalSupply", [], ["uint256"]),
    _fn("balanceOf", ["address"], ["uint256"]),
    _fn("ownerOf", ["uint256"], ["address"]),
    _fn("tokenOfOwnerByIndex", ["address", "uint256"], ["uint256"]),
    _fn("tokenByIndex", ["uint256"], ["uint256"]),
    _fn("getApproved", ["uint256"], ["address"]),
    _fn("isApprovedForAll", ["address", "address"], ["bool"]),
    _fn("supportsInterface", ["bytes4"], ["bool"]),
    _fn("transferFrom", ["address", "address", "uint256"], [], "nonpayable"),
    _fn("approve", ["address", "uint256"], [], "nonpayable"),
    _fn("setApprovalForAll", ["address", "bool"], [], "nonpayable"),
]

ERC1155_ABI = [
    _fn("balanceOf", ["address", "uint256"], ["uint256"]),
    _fn("isApprovedForAll", ["address", "address"], ["bool"]),
    _fn("supportsInterface", ["bytes4"], ["bool"]),
    _fn("safeTransferFrom", ["address", "address", "uint256", "uint256", "bytes"], [], "nonpayable"),
    _fn("setApprovalForAll", ["address", "bool"], [], "nonpayable"),
]

MULTICALL3_ABI = [
    {
        "type": "function",
        "name": "tryAggregate",
        "stateMutability": "payable",
        "inputs": [
            {"name": "requireSuccess", "type": "bool"},
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "callData", "type": "bytes"},
                ],
            },
        ],
        "outputs": [
            {
                "name": "returnData",
                "type": "tuple[]",
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
            }
        ],
    },
]

ABIS = {
    'erc20': ERC20_ABI,
    'erc20_bytes32': ERC20_BYTES32_ABI,
    'erc721': ERC721_ABI,
    'erc1155': ERC1155_ABI,
    'multicall3': MULTICALL3_ABI,
}

# keccak256 event signatures
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
TRANSFER_SINGLE_TOPIC = "0xc3d58168c5ae7397731d063d5bbf3d657854427343f4c083240f7aacaa2d0f62"
TRANSFER_BATCH_TOPIC = "0x4a39dc06d4c0dbc64b70af90fd698a233a518aa5d07e595d983b8c0526c8f7fb"

# ERC165 interface ids
ERC721_INTERFACE_ID = "0x80ac58cd"
ERC721_ENUMERABLE_INTERFACE_ID = "0x780e9d63"
ERC1155_INTERFACE_ID = "0xd9b67a26"


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic"""
    return "0x" + "0" * 24 + address.lower().replace("0x", "")


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:]


def topic_to_int(topic: str) -> int:
    return int(topic, 16)
