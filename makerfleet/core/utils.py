"""
Utility functions for makerfleet.
"""

LAMPORTS_PER_SOL = 1_000_000_000


def sol_to_lamports(sol: float) -> int:
    """Convert SOL to lamports, rounding down."""
    return int(sol * LAMPORTS_PER_SOL)


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL."""
    return lamports / LAMPORTS_PER_SOL


def format_sol(lamports: int) -> str:
    """
    Format a lamport amount for logs.

    Examples:
        1_500_000_000 -> "1.500000000 SOL"
        0 -> "0.000000000 SOL"
    """
    return f"{lamports_to_sol(lamports):.9f} SOL"


def short_address(address: str, chars: int = 4) -> str:
    """Shorten an address for display: "7xKX...9fQa"."""
    if not address or len(address) <= chars * 2 + 3:
        return address
    return f"{address[:chars]}...{address[-chars:]}"


def chunked(items: list, size: int) -> list:
    """Split a list into consecutive chunks of at most `size` items."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [items[i:i + size] for i in range(0, len(items), size)]
