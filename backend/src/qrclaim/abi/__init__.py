"""Contract ABIs used by the airdrop executor.

Only the fragments the backend calls are shipped: ERC-20 balance, allowance
and approve, and the multi-recipient ``airdropERC20`` entry point.
"""

import json
from functools import lru_cache
from importlib.resources import files

ERC20 = "ERC20"
AIRDROP = "Airdrop"


@lru_cache(maxsize=None)
def get_contract_abi(contract_name: str) -> list[dict]:
    """Load a contract ABI shipped as package data.

    Raises:
        FileNotFoundError: No ABI file for ``contract_name``
    """
    resource = files(__name__) / f"{contract_name}.json"
    if not resource.is_file():
        raise FileNotFoundError(f"No ABI shipped for contract {contract_name!r}")
    return json.loads(resource.read_text())
