"""Seed prices and per-symbol parameters for the price simulator."""

# Starting prices for commonly watched symbols
SEED_PRICES: dict[str, float] = {
    "BTCUSD": 115730.65,
    "ETHUSD": 4210.37,
    "SOLUSD": 186.42,
    "XRPUSD": 2.91,
    "DOGEUSD": 0.23,
    "AAPL": 190.00,
    "MSFT": 420.00,
    "NVDA": 800.00,
    "TSLA": 250.00,
}

# sigma: annualized volatility, mu: annualized drift
SYMBOL_PARAMS: dict[str, dict[str, float]] = {
    "BTCUSD": {"sigma": 0.55, "mu": 0.10},
    "ETHUSD": {"sigma": 0.70, "mu": 0.10},
    "SOLUSD": {"sigma": 0.90, "mu": 0.08},
    "XRPUSD": {"sigma": 0.85, "mu": 0.05},
    "DOGEUSD": {"sigma": 1.00, "mu": 0.05},
    "TSLA": {"sigma": 0.50, "mu": 0.03},
    "NVDA": {"sigma": 0.40, "mu": 0.08},
}

# Symbols not listed above
DEFAULT_PARAMS: dict[str, float] = {"sigma": 0.25, "mu": 0.05}
