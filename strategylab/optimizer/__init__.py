"""Strategy optimizer: genetic search over backtest risk parameters."""
