"""Global config loading from ~/.cblock/."""

from pathlib import Path

from pydantic import BaseModel

CBLOCK_DIR = Path.home() / ".cblock"
DATA_DIR = CBLOCK_DIR / "data"
CONTENT_DIR = CBLOCK_DIR / "content"
KEYS_DIR = CBLOCK_DIR / "keys"
LEDGER_DIR = CBLOCK_DIR / "ledger"


class CBlockConfig(BaseModel):
    poll_interval_seconds: float = 30.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    signing_domain_name: str = "CarbonCredit"
    signing_domain_version: str = "1"
    chain_id: int = 1337
    verifying_contract: str = "0x0000000000000000000000000000000000000000"
    lenient_minting: bool = False
    ledger_enabled: bool = True
    log_format: str = "console"


def ensure_dirs() -> None:
    """Create the ~/.cblock/ directory structure if it doesn't exist."""
    for d in [CBLOCK_DIR, DATA_DIR, CONTENT_DIR, KEYS_DIR, LEDGER_DIR]:
        d.mkdir(parents=True, exist_ok=True)


def load_config() -> CBlockConfig:
    """Load config from ~/.cblock/config.yaml, or return defaults."""
    ensure_dirs()
    config_path = CBLOCK_DIR / "config.yaml"
    if config_path.exists():
        import yaml

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        return CBlockConfig(**data)
    return CBlockConfig()
