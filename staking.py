# staking.py
import asyncio
import datetime
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker
from web3 import Web3

import crud
from providers import RpcProviderPool

logger = logging.getLogger(__name__)

ERC721_OWNER_OF_ABI = [
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class StakingError(Exception):
    """A staking request that cannot be honored; the message is shown to the user."""


def estimate_pending(
    daily_reward: float,
    nft_count: int,
    last_claimed: Optional[datetime.datetime],
    now: datetime.datetime,
    max_reward: float,
) -> float:
    """
    Rewards accrued since the last claim: daily * count * days elapsed,
    capped at max_reward. Nothing accrues before the first claim mark.
    """
    if last_claimed is None or nft_count <= 0 or daily_reward <= 0:
        return 0.0
    if last_claimed.tzinfo is None:
        last_claimed = last_claimed.replace(tzinfo=datetime.timezone.utc)
    days = max(0.0, (now - last_claimed).total_seconds() / 86400)
    return min(daily_reward * nft_count * days, max_reward)


def parse_token_ids(raw: str) -> List[str]:
    """'1, 2,3' -> ['1', '2', '3']; raises StakingError on anything non-numeric."""
    ids = []
    for part in (raw or "").replace(" ", ",").split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            raise StakingError(f"`{part}` is not a valid token id.")
        if part not in ids:
            ids.append(part)
    if not ids:
        raise StakingError("Provide at least one token id.")
    return ids


@dataclass
class RewardStatus:
    wallet: str
    staked: Dict[str, int] = field(default_factory=dict)
    total_rewards: float = 0.0
    pending: float = 0.0
    last_claimed: Optional[datetime.datetime] = None

    @property
    def staked_count(self) -> int:
        return sum(self.staked.values())


class StakingService:
    """Database bookkeeping for staked NFTs; ownership checks go on-chain."""

    def __init__(self, session_factory: sessionmaker, pools: Dict[str, RpcProviderPool], max_reward: float = 500.0):
        self.session_factory = session_factory
        self.pools = pools
        self.max_reward = max_reward

    def _owner_of(self, network: str, contract: str, token_id: str) -> Optional[str]:
        pool = self.pools.get(network)
        if pool is None:
            raise StakingError(f"Unsupported network `{network}`.")

        def call(w3: Web3):
            nft = w3.eth.contract(address=Web3.to_checksum_address(contract), abi=ERC721_OWNER_OF_ABI)
            return nft.functions.ownerOf(int(token_id)).call()

        try:
            return str(pool.call(call)).lower()
        except StakingError:
            raise
        except Exception as e:
            logger.warning(f"ownerOf({token_id}) on {contract} failed: {e}")
            return None

    def resolve_project(self, guild_id: str, contract: Optional[str] = None):
        db = self.session_factory()
        try:
            projects = crud.get_staking_projects(db, guild_id)
        finally:
            db.close()
        if not projects:
            raise StakingError("No staking project is configured for this server.")
        if contract:
            for project in projects:
                if project.contract_address == contract.lower():
                    return project
            raise StakingError("That contract is not a staking project in this server.")
        if len(projects) > 1:
            raise StakingError("This server has several staking projects; pass the contract address.")
        return projects[0]

    def stake(self, guild_id: str, wallet: str, token_ids: List[str], contract: Optional[str] = None, now: Optional[datetime.datetime] = None) -> List[str]:
        """Stakes the tokens `wallet` owns on-chain. Returns the ids newly staked."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        wallet = wallet.lower()
        project = self.resolve_project(guild_id, contract)

        not_owned = [t for t in token_ids if self._owner_of(project.network, project.contract_address, t) != wallet]
        if not_owned:
            raise StakingError(f"Wallet does not own token(s): {', '.join(not_owned)}")

        db = self.session_factory()
        try:
            staked = crud.stake_tokens(db, wallet, project.contract_address, project.network, token_ids)
            if crud.get_reward_log(db, wallet) is None:
                # start the accrual clock at the first stake
                crud.record_claim(db, wallet, 0.0, now)
            return staked
        finally:
            db.close()

    def unstake(self, guild_id: str, wallet: str, token_ids: List[str], contract: Optional[str] = None) -> int:
        """Unstakes tokens `wallet` still owns on-chain. Returns the number removed."""
        wallet = wallet.lower()
        project = self.resolve_project(guild_id, contract)

        not_owned = [t for t in token_ids if self._owner_of(project.network, project.contract_address, t) != wallet]
        if not_owned:
            raise StakingError(f"Wallet does not own token(s): {', '.join(not_owned)}")

        db = self.session_factory()
        try:
            return crud.unstake_tokens(db, wallet, project.contract_address, token_ids)
        finally:
            db.close()

    def reward_status(self, wallet: str, now: Optional[datetime.datetime] = None) -> RewardStatus:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        wallet = wallet.lower()
        db = self.session_factory()
        try:
            status = RewardStatus(wallet=wallet)
            counts: Dict[tuple, int] = {}
            for nft in crud.get_staked_nfts(db, wallet):
                status.staked[nft.contract_address] = status.staked.get(nft.contract_address, 0) + 1
                key = (nft.contract_address, nft.network)
                counts[key] = counts.get(key, 0) + 1
            rates = {}
            for contract, network in counts:
                config = crud.get_staking_config(db, contract, network)
                rates[(contract, network)] = config.daily_reward if config is not None else 0.0
            log = crud.get_reward_log(db, wallet)
        finally:
            db.close()

        if log is not None:
            status.total_rewards = log.total_rewards or 0.0
            status.last_claimed = log.last_claimed
        pending = sum(
            estimate_pending(rates[key], count, status.last_claimed, now, float("inf"))
            for key, count in counts.items()
        )
        status.pending = min(pending, self.max_reward)
        return status

    def _holds_any_staked(self, wallet: str) -> bool:
        db = self.session_factory()
        try:
            staked = [(n.network, n.contract_address, n.token_id) for n in crud.get_staked_nfts(db, wallet)]
        finally:
            db.close()
        return any(self._owner_of(network, contract, token_id) == wallet for network, contract, token_id in staked)

    def claim(self, wallet: str, now: Optional[datetime.datetime] = None) -> float:
        """Books pending rewards. The wallet must still own one of its staked tokens."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        wallet = wallet.lower()
        status = self.reward_status(wallet, now)
        if status.staked_count == 0:
            raise StakingError("This wallet has nothing staked.")
        if not self._holds_any_staked(wallet):
            raise StakingError("This wallet no longer owns any of its staked NFTs.")
        db = self.session_factory()
        try:
            crud.record_claim(db, wallet, status.pending, now)
        finally:
            db.close()
        return status.pending

    def list_stakers(self, guild_id: str) -> List[tuple]:
        db = self.session_factory()
        try:
            contracts = [p.contract_address for p in crud.get_staking_projects(db, guild_id)]
            return crud.list_stakers(db, contracts)
        finally:
            db.close()

    async def run(self, fn, *args, **kwargs):
        """Runs a blocking service method off the event loop."""
        return await asyncio.to_thread(fn, *args, **kwargs)
