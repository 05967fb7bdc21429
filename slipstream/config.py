"""
Configuration loader for Slipstream.
Loads settings from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv


# Native SOL (wrapped) mint
NATIVE_SOL_MINT = "So11111111111111111111111111111111111111112"

# Stablecoins
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

# Assets a counterparty pays with when buying
QUOTE_MINTS = frozenset({NATIVE_SOL_MINT, USDC_MINT, USDT_MINT})

LAMPORTS_PER_SOL = 1_000_000_000

# RPC backoff
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 60.0


@dataclass
class Config:
    """Bot configuration loaded from environment variables."""

    # Network
    rpc_url: str
    ws_url: str
    network: str  # 'devnet' or 'mainnet-beta'
    rpc_max_requests_per_second: float

    # Wallets
    wallet_private_key: str
    target_wallet: str

    # Jupiter API
    jupiter_quote_api: str
    jupiter_swap_api: str
    priority_fee_url: str  # Helius-compatible getPriorityFeeEstimate endpoint

    # Circuit breakers
    enable_buy: bool
    enable_sell: bool

    # Slippage / retries
    base_slippage_bps: int
    slippage_increment_bps: int
    max_slippage_bps: int
    emergency_slippage_bps: int  # Above max, used only by the emergency sell
    max_retries: int
    retry_backoff_seconds: float
    max_price_impact_pct: float

    # Sizing guards
    min_trade_sol: float  # Dust floor, SOL-equivalent
    min_sell_pct: float  # Sells are never smaller than this % of our balance
    sell_noise_pct: float  # Counterparty decreases below this % are ignored
    max_buy_sol: float
    fee_reserve_sol: float

    # Priority fees (micro-lamports per compute unit)
    buy_fee_fraction: float  # Fraction of the "medium" estimate used for buys
    default_priority_fee_micro_lamports: int

    # Confirmation
    confirm_commitment: str  # 'confirmed' or 'finalized'
    confirm_timeout_seconds: float

    # Detection
    detector_mode: str  # 'push', 'poll' or 'both'
    push_debounce_ms: int
    poll_mint_delay_ms: int
    balance_cache_ttl_ms: int
    heartbeat_interval_seconds: float
    max_reconnect_attempts: int

    # State files
    holdings_file: str
    pending_sells_file: str
    trade_history_file: str
    max_pending_sell_attempts: int
    pending_sell_interval_seconds: float

    # Ops
    log_level: str

    @property
    def push_enabled(self) -> bool:
        return self.detector_mode in ('push', 'both')

    @property
    def poll_enabled(self) -> bool:
        return self.detector_mode in ('poll', 'both')

    @property
    def push_debounce_seconds(self) -> float:
        return self.push_debounce_ms / 1000.0

    @property
    def poll_mint_delay_seconds(self) -> float:
        return self.poll_mint_delay_ms / 1000.0

    @property
    def balance_cache_ttl_seconds(self) -> float:
        return self.balance_cache_ttl_ms / 1000.0


def derive_ws_url(rpc_url: str) -> str:
    """Websocket endpoint for an HTTP RPC endpoint (https -> wss)."""
    if rpc_url.startswith('https://'):
        return 'wss://' + rpc_url[len('https://'):]
    if rpc_url.startswith('http://'):
        return 'ws://' + rpc_url[len('http://'):]
    return rpc_url


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


def load_config() -> Config:
    """Load configuration from environment variables."""
    load_dotenv()

    # Validate required fields
    rpc_url = os.getenv('RPC_URL')
    if not rpc_url:
        raise ValueError("RPC_URL environment variable is required")

    wallet_private_key = os.getenv('WALLET_PRIVATE_KEY_BASE58', '')
    if not wallet_private_key:
        raise ValueError("WALLET_PRIVATE_KEY_BASE58 environment variable is required")

    target_wallet = os.getenv('TARGET_WALLET', '').strip()
    if not target_wallet:
        raise ValueError("TARGET_WALLET environment variable is required")

    detector_mode = os.getenv('DETECTOR_MODE', 'both').lower()
    if detector_mode not in ('push', 'poll', 'both'):
        raise ValueError(f"DETECTOR_MODE must be push, poll or both (got {detector_mode!r})")

    confirm_commitment = os.getenv('CONFIRM_COMMITMENT', 'confirmed')
    if confirm_commitment not in ('confirmed', 'finalized'):
        raise ValueError(f"CONFIRM_COMMITMENT must be confirmed or finalized (got {confirm_commitment!r})")

    return Config(
        # Network
        rpc_url=rpc_url,
        ws_url=os.getenv('WS_URL') or derive_ws_url(rpc_url),
        network=os.getenv('NETWORK', 'mainnet-beta'),
        rpc_max_requests_per_second=float(os.getenv('RPC_MAX_REQUESTS_PER_SECOND', '10')),

        # Wallets
        wallet_private_key=wallet_private_key,
        target_wallet=target_wallet,

        # Jupiter API
        jupiter_quote_api=os.getenv('JUPITER_QUOTE_API', 'https://lite-api.jup.ag/swap/v1/quote'),
        jupiter_swap_api=os.getenv('JUPITER_SWAP_API', 'https://lite-api.jup.ag/swap/v1/swap'),
        priority_fee_url=os.getenv('PRIORITY_FEE_URL') or rpc_url,

        # Circuit breakers
        enable_buy=_env_bool('ENABLE_BUY', 'true'),
        enable_sell=_env_bool('ENABLE_SELL', 'true'),

        # Slippage / retries
        base_slippage_bps=int(os.getenv('BASE_SLIPPAGE_BPS', '300')),  # 3%
        slippage_increment_bps=int(os.getenv('SLIPPAGE_INCREMENT_BPS', '200')),  # +2% per retry
        max_slippage_bps=int(os.getenv('MAX_SLIPPAGE_BPS', '1500')),  # 15% cap
        emergency_slippage_bps=int(os.getenv('EMERGENCY_SLIPPAGE_BPS', '3000')),  # 30%
        max_retries=int(os.getenv('MAX_RETRIES', '3')),
        retry_backoff_seconds=float(os.getenv('RETRY_BACKOFF_SECONDS', '1.0')),
        max_price_impact_pct=float(os.getenv('MAX_PRICE_IMPACT_PCT', '100')),

        # Sizing guards
        min_trade_sol=float(os.getenv('MIN_TRADE_SOL', '0.001')),
        min_sell_pct=float(os.getenv('MIN_SELL_PCT', '5')),
        sell_noise_pct=float(os.getenv('SELL_NOISE_PCT', '0.5')),
        max_buy_sol=float(os.getenv('MAX_BUY_SOL', '0.5')),
        fee_reserve_sol=float(os.getenv('FEE_RESERVE_SOL', '0.05')),

        # Priority fees
        buy_fee_fraction=float(os.getenv('BUY_FEE_FRACTION', '0.5')),
        default_priority_fee_micro_lamports=int(os.getenv('DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS', '50000')),

        # Confirmation
        confirm_commitment=confirm_commitment,
        confirm_timeout_seconds=float(os.getenv('CONFIRM_TIMEOUT_SECONDS', '30')),

        # Detection
        detector_mode=detector_mode,
        push_debounce_ms=int(os.getenv('PUSH_DEBOUNCE_MS', '500')),
        poll_mint_delay_ms=int(os.getenv('POLL_MINT_DELAY_MS', '500')),
        balance_cache_ttl_ms=int(os.getenv('BALANCE_CACHE_TTL_MS', '3000')),
        heartbeat_interval_seconds=float(os.getenv('HEARTBEAT_INTERVAL_SECONDS', '30')),
        max_reconnect_attempts=int(os.getenv('MAX_RECONNECT_ATTEMPTS', '10')),

        # State files
        holdings_file=os.getenv('HOLDINGS_FILE', 'holdings.json'),
        pending_sells_file=os.getenv('PENDING_SELLS_FILE', 'pending_sells.json'),
        trade_history_file=os.getenv('TRADE_HISTORY_FILE', 'trade_history.json'),
        max_pending_sell_attempts=int(os.getenv('MAX_PENDING_SELL_ATTEMPTS', '5')),
        pending_sell_interval_seconds=float(os.getenv('PENDING_SELL_INTERVAL_SECONDS', '60')),

        # Ops
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
    )
