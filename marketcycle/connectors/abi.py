"""Minimal contract ABIs for the calls the orchestrator makes."""

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

MARKET_CREATED_EVENT = "NewMarketInitialisedAndWhitelisted"

# Mindshare scores are fixed-point on-chain.
MINDSHARE_SCALE = 10**6


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
    }


FACTORY_ABI = [
    _fn("kolIdToMarket", [("kolId", "uint256")], [("", "address")], "view"),
    _fn(
        "initialiseMarket",
        [("kolId", "uint256"), ("oracle", "address"), ("expiresIn", "uint256")],
        [("", "address")],
    ),
    {
        "type": "event",
        "name": MARKET_CREATED_EVENT,
        "anonymous": False,
        "inputs": [
            {"name": "kolId", "type": "uint256", "indexed": True},
            {"name": "maker", "type": "address", "indexed": True},
            {"name": "marketAddy", "type": "address", "indexed": False},
        ],
    },
]

ORDER_BOOK_ABI = [
    _fn("getActiveOrderIds", [], [("", "uint256[]")], "view"),
    _fn("closePosition", [("positionId", "uint256")]),
    _fn("resetMarket", [("mindshares", "uint256[]")]),
]

ORACLE_ABI = [
    _fn(
        "updateCrashedOutKolData",
        [("kolId", "uint256"), ("rank", "uint256"), ("mindshareScore", "uint256")],
    ),
]
