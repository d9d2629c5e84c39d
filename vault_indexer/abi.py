"""Event ABIs emitted by the IP vault contract."""

from typing import Any, Dict, List

from eth_utils import event_abi_to_log_topic


def _event(name: str, *inputs: tuple) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg_name, "type": arg_type, "indexed": indexed}
            for arg_name, arg_type, indexed in inputs
        ],
    }


EVENT_ABIS: List[Dict[str, Any]] = [
    _event(
        "VaultCreated",
        ("vaultAddress", "address", True),
        ("ipId", "bytes32", True),
        ("creator", "address", True),
        ("initialCVS", "uint256", False),
    ),
    _event(
        "LicenseSold",
        ("vaultAddress", "address", True),
        ("ipId", "bytes32", True),
        ("licensee", "address", True),
        ("price", "uint256", False),
        ("licenseType", "string", False),
    ),
    _event(
        "LoanIssued",
        ("vaultAddress", "address", True),
        ("borrower", "address", True),
        ("loanId", "uint256", True),
        ("amount", "uint256", False),
        ("collateral", "uint256", False),
        ("interestRate", "uint256", False),
        ("duration", "uint256", False),
    ),
    _event(
        "LoanRepaid",
        ("vaultAddress", "address", True),
        ("borrower", "address", True),
        ("loanId", "uint256", True),
        ("amount", "uint256", False),
    ),
    _event(
        "LoanLiquidated",
        ("vaultAddress", "address", True),
        ("borrower", "address", True),
        ("loanId", "uint256", True),
    ),
    # Externally recomputed valuation score; overrides accumulated increments.
    _event(
        "CVSUpdated",
        ("vaultAddress", "address", True),
        ("oldCVS", "uint256", False),
        ("newCVS", "uint256", False),
    ),
    _event(
        "Deposited",
        ("vaultAddress", "address", True),
        ("depositor", "address", True),
        ("amount", "uint256", False),
        ("shares", "uint256", False),
    ),
    _event(
        "Withdrawn",
        ("vaultAddress", "address", True),
        ("withdrawer", "address", True),
        ("amount", "uint256", False),
        ("shares", "uint256", False),
    ),
]

EVENTS_BY_NAME: Dict[str, Dict[str, Any]] = {abi["name"]: abi for abi in EVENT_ABIS}


def event_topic(event_abi: Dict[str, Any]) -> str:
    return "0x" + event_abi_to_log_topic(event_abi).hex()
