# models.py
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from database import Base


class DigestEvent(Base):
    """
    One observed on-chain fact for a guild. Rows are append-only.
    token_id_norm is '' when token_id is NULL so swaps dedupe on the same key.
    """
    __tablename__ = "digest_events"
    __table_args__ = (
        UniqueConstraint("guild_id", "event_type", "tx_hash", "token_id_norm", name="uq_digest_events_dedupe"),
        Index("ix_digest_events_guild_ts", "guild_id", "ts"),
        Index("ix_digest_events_guild_type_ts", "guild_id", "event_type", "ts"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    guild_id = Column(String(64), nullable=False)
    event_type = Column(String(16), nullable=False)
    sub_type = Column(String(16), nullable=True)
    chain = Column(String(16), nullable=True)
    contract = Column(String(120), nullable=True)
    token_id = Column(String(64), nullable=True)
    token_id_norm = Column(String(64), nullable=False, default="")
    amount_native = Column(Float, nullable=True)
    amount_eth = Column(Float, nullable=True)
    amount_usd = Column(Float, nullable=True)
    buyer = Column(String(120), nullable=True)
    seller = Column(String(120), nullable=True)
    tx_hash = Column(String(140), nullable=True, index=True)
    ts = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TrackedContract(Base):
    __tablename__ = "contract_watchlist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, index=True)
    address = Column(String(64), unique=True, nullable=False)
    chain = Column(String(16), nullable=False, default="base")
    channel_ids = Column(JSON, nullable=False, default=list)
    mint_price = Column(Float, nullable=True)
    mint_token = Column(String(64), nullable=True)
    mint_token_symbol = Column(String(16), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TrackedToken(Base):
    """An ERC-20 whose router buys and sells are announced in one guild channel."""
    __tablename__ = "tracked_tokens"
    __table_args__ = (PrimaryKeyConstraint("address", "guild_id"),)

    address = Column(String(64), nullable=False)
    guild_id = Column(String(64), nullable=False)
    name = Column(String, nullable=False)
    channel_id = Column(String(64), nullable=True)
    chain = Column(String(16), nullable=False, default="base")
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DigestSettings(Base):
    __tablename__ = "daily_digest_settings"

    guild_id = Column(String(64), primary_key=True)
    channel_id = Column(String(64), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    tz = Column(String(64), nullable=False, default="UTC")
    hour = Column(Integer, nullable=False, default=0)
    minute = Column(Integer, nullable=False, default=0)
    hours_window = Column(Integer, nullable=False, default=24)
    include_mints = Column(Boolean, nullable=False, default=True)
    include_sales = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DigestRun(Base):
    """Send-once claim for one scheduled digest run."""
    __tablename__ = "daily_digest_runs"

    run_key = Column(String(160), primary_key=True)
    guild_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class StakingProject(Base):
    __tablename__ = "staking_projects"
    __table_args__ = (UniqueConstraint("guild_id", "contract_address", "network", name="uq_staking_projects"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    guild_id = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    contract_address = Column(String(64), nullable=False)
    network = Column(String(16), nullable=False, default="base")


class StakingConfig(Base):
    __tablename__ = "staking_config"
    __table_args__ = (PrimaryKeyConstraint("contract_address", "network"),)

    contract_address = Column(String(64), nullable=False)
    network = Column(String(16), nullable=False)
    daily_reward = Column(Float, nullable=False, default=0)
    vault_wallet = Column(String(64), nullable=True)
    token_contract = Column(String(64), nullable=True)


class StakedNft(Base):
    __tablename__ = "staked_nfts"
    __table_args__ = (PrimaryKeyConstraint("wallet_address", "contract_address", "token_id"),)

    wallet_address = Column(String(64), nullable=False)
    contract_address = Column(String(64), nullable=False)
    token_id = Column(String(64), nullable=False)
    network = Column(String(16), nullable=False, default="base")
    staked_at = Column(DateTime(timezone=True), server_default=func.now())


class RewardLog(Base):
    __tablename__ = "reward_log"

    wallet_address = Column(String(64), primary_key=True)
    total_rewards = Column(Float, nullable=False, default=0)
    last_claimed = Column(DateTime(timezone=True), nullable=True)


class PremiumServer(Base):
    __tablename__ = "premium_servers"

    server_id = Column(String(64), primary_key=True)
    tier = Column(String(16), nullable=False, default="free")


class PremiumUser(Base):
    __tablename__ = "premium_users"

    user_id = Column(BigInteger, primary_key=True)
    tier = Column(String(16), nullable=False, default="free")
