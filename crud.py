# crud.py
import datetime
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
import schemas

TIER_RANK = {"free": 0, "premium": 1, "premiumplus": 2}


def _insert_ignore(db: Session, model, values: dict) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING for the models' unique keys.
    Returns True only if a row was written.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing()
    else:
        try:
            db.add(model(**values))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


# --- digest events ---

def insert_digest_event(db: Session, values: dict) -> bool:
    return _insert_ignore(db, models.DigestEvent, values)


def count_digest_events(db: Session, guild_id: str) -> int:
    return db.query(func.count(models.DigestEvent.id)).filter(models.DigestEvent.guild_id == guild_id).scalar()


def fetch_digest_window(db: Session, guild_id: str, since: datetime.datetime, limit: int) -> list[models.DigestEvent]:
    """Newest-first events for a guild at or after `since`."""
    return (
        db.query(models.DigestEvent)
        .filter(models.DigestEvent.guild_id == guild_id, models.DigestEvent.ts >= since)
        .order_by(models.DigestEvent.ts.desc(), models.DigestEvent.id.desc())
        .limit(limit)
        .all()
    )


# --- tracked contracts ---

def get_tracked_contracts(db: Session) -> list[models.TrackedContract]:
    return db.query(models.TrackedContract).order_by(models.TrackedContract.id).all()


def get_tracked_contract_by_name(db: Session, name: str) -> Optional[models.TrackedContract]:
    return db.query(models.TrackedContract).filter(func.lower(models.TrackedContract.name) == name.strip().lower()).first()


def get_contracts_for_chain(db: Session, chain: str) -> list[models.TrackedContract]:
    return db.query(models.TrackedContract).filter(models.TrackedContract.chain == chain).all()


def upsert_tracked_contract(db: Session, contract: schemas.TrackedContractCreate, channel_id: str) -> tuple[models.TrackedContract, bool]:
    """
    Creates the watch entry or updates it, and subscribes `channel_id`.
    Returns the row and True if it was created.
    """
    address = contract.address.lower()
    db_contract = db.query(models.TrackedContract).filter(models.TrackedContract.address == address).first()
    created = db_contract is None
    if created:
        db_contract = models.TrackedContract(address=address, channel_ids=[])
        db.add(db_contract)

    db_contract.name = contract.name
    db_contract.chain = contract.chain
    if contract.mint_price is not None:
        db_contract.mint_price = contract.mint_price
    if contract.mint_token is not None:
        db_contract.mint_token = contract.mint_token.lower()
    if contract.mint_token_symbol is not None:
        db_contract.mint_token_symbol = contract.mint_token_symbol

    channels = list(db_contract.channel_ids or [])
    if channel_id not in channels:
        channels.append(channel_id)
    # reassign so the JSON column is flagged dirty
    db_contract.channel_ids = channels
    db.commit()
    db.refresh(db_contract)
    return db_contract, created


def remove_channel_from_contract(db: Session, name: str, channel_id: str) -> bool:
    db_contract = get_tracked_contract_by_name(db, name)
    if not db_contract or channel_id not in (db_contract.channel_ids or []):
        return False
    db_contract.channel_ids = [c for c in db_contract.channel_ids if c != channel_id]
    db.commit()
    return True


def clear_contract_channels(db: Session, name: str) -> bool:
    """Pauses tracking. The row itself is kept."""
    db_contract = get_tracked_contract_by_name(db, name)
    if not db_contract:
        return False
    db_contract.channel_ids = []
    db.commit()
    return True


# --- tracked tokens ---

def upsert_tracked_token(db: Session, guild_id: str, name: str, address: str, chain: str, channel_id: str) -> tuple[models.TrackedToken, bool]:
    address = address.lower()
    token = db.get(models.TrackedToken, (address, guild_id))
    created = token is None
    if created:
        token = models.TrackedToken(address=address, guild_id=guild_id)
        db.add(token)
    token.name = name.strip().lower()
    token.chain = chain
    token.channel_id = channel_id
    db.commit()
    db.refresh(token)
    return token, created


def get_tracked_tokens(db: Session, guild_id: str) -> list[models.TrackedToken]:
    return db.query(models.TrackedToken).filter(models.TrackedToken.guild_id == guild_id).order_by(models.TrackedToken.name).all()


def get_tokens_for_chain(db: Session, chain: str) -> list[models.TrackedToken]:
    return db.query(models.TrackedToken).filter(models.TrackedToken.chain == chain).all()


def remove_tracked_token(db: Session, guild_id: str, name_or_address: str) -> Optional[schemas.TrackedToken]:
    """Deletes the guild's token matching a name or address. Returns what was removed."""
    key = name_or_address.strip().lower()
    token = (
        db.query(models.TrackedToken)
        .filter(
            models.TrackedToken.guild_id == guild_id,
            (models.TrackedToken.address == key) | (func.lower(models.TrackedToken.name) == key),
        )
        .first()
    )
    if token is None:
        return None
    removed = schemas.TrackedToken.model_validate(token)
    db.delete(token)
    db.commit()
    return removed


# --- digest settings ---

def get_digest_settings(db: Session, guild_id: str) -> Optional[models.DigestSettings]:
    return db.query(models.DigestSettings).filter(models.DigestSettings.guild_id == guild_id).first()


def get_enabled_digest_settings(db: Session) -> list[models.DigestSettings]:
    return db.query(models.DigestSettings).filter(models.DigestSettings.enabled.is_(True)).all()


def upsert_digest_settings(db: Session, settings: schemas.DigestSettingsUpdate) -> models.DigestSettings:
    db_settings = get_digest_settings(db, settings.guild_id)
    if db_settings is None:
        db_settings = models.DigestSettings(guild_id=settings.guild_id)
        db.add(db_settings)
    for field, value in settings.model_dump(exclude={"guild_id"}).items():
        setattr(db_settings, field, value)
    db.commit()
    db.refresh(db_settings)
    return db_settings


def disable_digest(db: Session, guild_id: str) -> bool:
    db_settings = get_digest_settings(db, guild_id)
    if not db_settings:
        return False
    db_settings.enabled = False
    db.commit()
    return True


def claim_digest_run(db: Session, run_key: str, guild_id: str) -> bool:
    """True if this process won the claim for `run_key`."""
    return _insert_ignore(db, models.DigestRun, {"run_key": run_key, "guild_id": guild_id})


# --- staking ---

def add_staking_project(
    db: Session,
    guild_id: str,
    name: str,
    contract_address: str,
    network: str,
    daily_reward: float,
    token_contract: str,
    vault_wallet: str,
) -> models.StakingProject:
    contract_address = contract_address.lower()
    project = (
        db.query(models.StakingProject)
        .filter(
            models.StakingProject.guild_id == guild_id,
            models.StakingProject.contract_address == contract_address,
            models.StakingProject.network == network,
        )
        .first()
    )
    if project is None:
        project = models.StakingProject(guild_id=guild_id, contract_address=contract_address, network=network)
        db.add(project)
    project.name = name

    config = db.get(models.StakingConfig, (contract_address, network))
    if config is None:
        config = models.StakingConfig(contract_address=contract_address, network=network)
        db.add(config)
    config.daily_reward = daily_reward
    config.token_contract = token_contract.lower()
    config.vault_wallet = vault_wallet.lower()

    db.commit()
    db.refresh(project)
    return project


def remove_staking_project(db: Session, guild_id: str, contract_address: str) -> bool:
    deleted = (
        db.query(models.StakingProject)
        .filter(
            models.StakingProject.guild_id == guild_id,
            models.StakingProject.contract_address == contract_address.lower(),
        )
        .delete()
    )
    db.commit()
    return deleted > 0


def get_staking_projects(db: Session, guild_id: str) -> list[models.StakingProject]:
    return db.query(models.StakingProject).filter(models.StakingProject.guild_id == guild_id).order_by(models.StakingProject.id).all()


def get_staking_config(db: Session, contract_address: str, network: str) -> Optional[models.StakingConfig]:
    return db.get(models.StakingConfig, (contract_address.lower(), network))


def stake_tokens(db: Session, wallet: str, contract_address: str, network: str, token_ids: Iterable[str]) -> list[str]:
    """Returns the token ids that were newly staked."""
    staked = []
    for token_id in token_ids:
        values = {
            "wallet_address": wallet.lower(),
            "contract_address": contract_address.lower(),
            "token_id": str(token_id),
            "network": network,
        }
        if _insert_ignore(db, models.StakedNft, values):
            staked.append(str(token_id))
    return staked


def unstake_tokens(db: Session, wallet: str, contract_address: str, token_ids: Iterable[str]) -> int:
    removed = (
        db.query(models.StakedNft)
        .filter(
            models.StakedNft.wallet_address == wallet.lower(),
            models.StakedNft.contract_address == contract_address.lower(),
            models.StakedNft.token_id.in_([str(t) for t in token_ids]),
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return removed


def get_staked_nfts(db: Session, wallet: str) -> list[models.StakedNft]:
    return db.query(models.StakedNft).filter(models.StakedNft.wallet_address == wallet.lower()).all()


def list_stakers(db: Session, contract_addresses: list[str]) -> list[tuple[str, int]]:
    """(wallet, staked count) pairs, largest holders first."""
    if not contract_addresses:
        return []
    rows = (
        db.query(models.StakedNft.wallet_address, func.count(models.StakedNft.token_id))
        .filter(models.StakedNft.contract_address.in_([a.lower() for a in contract_addresses]))
        .group_by(models.StakedNft.wallet_address)
        .order_by(func.count(models.StakedNft.token_id).desc(), models.StakedNft.wallet_address)
        .all()
    )
    return [(wallet, count) for wallet, count in rows]


def get_reward_log(db: Session, wallet: str) -> Optional[models.RewardLog]:
    return db.get(models.RewardLog, wallet.lower())


def record_claim(db: Session, wallet: str, amount: float, claimed_at: datetime.datetime) -> models.RewardLog:
    log = get_reward_log(db, wallet)
    if log is None:
        log = models.RewardLog(wallet_address=wallet.lower(), total_rewards=0)
        db.add(log)
    log.total_rewards = (log.total_rewards or 0) + amount
    log.last_claimed = claimed_at
    db.commit()
    db.refresh(log)
    return log


# --- premium tiers ---

def set_server_tier(db: Session, server_id: str, tier: str) -> None:
    row = db.get(models.PremiumServer, server_id)
    if row is None:
        row = models.PremiumServer(server_id=server_id)
        db.add(row)
    row.tier = tier
    db.commit()


def set_user_tier(db: Session, user_id: int, tier: str) -> None:
    row = db.get(models.PremiumUser, user_id)
    if row is None:
        row = models.PremiumUser(user_id=user_id)
        db.add(row)
    row.tier = tier
    db.commit()


def get_effective_tier(db: Session, server_id: Optional[str], user_id: Optional[int]) -> str:
    """User tier wins over the server tier; no rows means free."""
    if user_id is not None:
        user_row = db.get(models.PremiumUser, user_id)
        if user_row:
            return user_row.tier
    if server_id is not None:
        server_row = db.get(models.PremiumServer, server_id)
        if server_row:
            return server_row.tier
    return "free"


def list_premium(db: Session) -> tuple[list[models.PremiumServer], list[models.PremiumUser]]:
    servers = db.query(models.PremiumServer).filter(models.PremiumServer.tier != "free").all()
    users = db.query(models.PremiumUser).filter(models.PremiumUser.tier != "free").all()
    return servers, users
