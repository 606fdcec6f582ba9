"""
Read-only Ethereum access for the auction contracts.

Only block height, event logs and view calls are needed; nothing here
signs or sends transactions.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from web3 import AsyncWeb3, Web3

from auction_cache.errors import ChainReadError, RateLimitError
from auction_cache.utils.logging import get_logger

logger = get_logger(__name__)

# BidCanceled(uint256 indexed bidId, address indexed bidder, bytes32 eRefund)
BID_CANCELED_TOPIC = Web3.to_hex(Web3.keccak(text="BidCanceled(uint256,address,bytes32)"))

AUCTION_ABI = [
    {
        "inputs": [],
        "name": "auctionConfig",
        "outputs": [
            {"name": "startAuctionTime", "type": "uint256"},
            {"name": "endAuctionTime", "type": "uint256"},
            {"name": "zamaTokenSupply", "type": "uint64"},
            {"name": "maxCumulativeBidQuantity", "type": "uint64"},
            {"name": "zamaTokenAddress", "type": "address"},
            {"name": "zamaTreasuryAddress", "type": "address"},
            {"name": "complianceAddress", "type": "address"},
            {"name": "kycAllowlistRegistryAddress", "type": "address"},
            {"name": "paymentTokenAddress", "type": "address"},
            {"name": "walletCount", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "auctionState",
        "outputs": [
            {"name": "settlementPrice", "type": "uint64"},
            {"name": "unallocatedZamaSupply", "type": "uint64"},
            {"name": "lastBidId", "type": "uint64"},
            {"name": "totalNumberOfUsers", "type": "uint64"},
            {"name": "zamaTokenReceived", "type": "bool"},
            {"name": "settlementOpen", "type": "bool"},
            {"name": "claimingOpen", "type": "bool"},
            {"name": "auctionCanceled", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC20_BALANCE_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass
class AuctionInfo:
    """Snapshot of the auction contract plus total value shielded."""
    start_time: int
    end_time: int
    token_supply: int
    total_users: int
    last_bid_id: int
    canceled: bool
    total_shielded_usdt: int  # raw 6-decimal units held by the cUSDT proxy

    def status(self, now: float) -> str:
        if self.canceled:
            return "canceled"
        if now < self.start_time:
            return "not_started"
        if now < self.end_time:
            return "active"
        return "ended"

    def to_dict(self, now: float) -> dict:
        return {**asdict(self), "status": self.status(now)}


def _is_rate_limited(exc: Exception) -> bool:
    if getattr(exc, "status", None) == 429:
        return True
    text = str(exc).lower()
    return "429" in text or "rate limit" in text or "too many requests" in text


class ChainReader:
    """Thin async wrapper around web3 for the calls the service makes."""

    def __init__(
        self,
        rpc_url: str,
        auction_address: str,
        cusdt_address: str,
        usdt_address: str,
        web3: Optional[AsyncWeb3] = None,
    ):
        self.web3 = web3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.auction_address = Web3.to_checksum_address(auction_address)
        self.cusdt_address = Web3.to_checksum_address(cusdt_address)
        self.usdt_address = Web3.to_checksum_address(usdt_address)
        self._auction = self.web3.eth.contract(address=self.auction_address, abi=AUCTION_ABI)
        self._usdt = self.web3.eth.contract(address=self.usdt_address, abi=ERC20_BALANCE_ABI)

    async def close(self) -> None:
        provider = self.web3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def _call(self, label: str, awaitable_factory) -> Any:
        """Run one RPC call, turning provider 429s into retryable errors."""
        try:
            return await awaitable_factory()
        except Exception as e:
            if _is_rate_limited(e):
                logger.warning("RPC rate limited, retrying...", call=label)
                raise RateLimitError("RPC rate limit exceeded", str(e)) from e
            raise

    async def block_number(self) -> int:
        async def _fetch():
            return await self.web3.eth.block_number

        return int(await self._call("eth_blockNumber", _fetch))

    async def get_bid_canceled_logs(self, from_block: int, to_block: int) -> list:
        """``eth_getLogs`` for BidCanceled on the auction, inclusive range."""
        params = {
            "address": self.auction_address,
            "topics": [BID_CANCELED_TOPIC],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        return list(await self._call("eth_getLogs", lambda: self.web3.eth.get_logs(params)))

    async def auction_info(self) -> AuctionInfo:
        """Read auction config, state and shielded balance concurrently."""
        try:
            config, state, shielded = await asyncio.gather(
                self._call("auctionConfig", lambda: self._auction.functions.auctionConfig().call()),
                self._call("auctionState", lambda: self._auction.functions.auctionState().call()),
                self._call(
                    "balanceOf",
                    lambda: self._usdt.functions.balanceOf(self.cusdt_address).call(),
                ),
            )
        except Exception as e:
            logger.error("Auction info read failed", error=str(e))
            raise ChainReadError("Failed to read auction contract", str(e)) from e

        return AuctionInfo(
            start_time=int(config[0]),
            end_time=int(config[1]),
            token_supply=int(config[2]),
            total_users=int(state[3]),
            last_bid_id=int(state[2]),
            canceled=bool(state[7]),
            total_shielded_usdt=int(shielded),
        )
