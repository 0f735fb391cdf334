from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CARDMINT_")

    app_name: str = "CardMint"
    debug: bool = False

    database_url: str = "postgresql+asyncpg://localhost:5432/cardmint"

    # Metadata URI template handed out with every item (ERC-1155 style {id})
    metadata_uri: str = "https://cards.example/metadata/{id}.json"

    # Hex-encoded 32-byte allowlist root, produced by jobs.build_allowlist
    allowlist_root: str = "0x" + "00" * 32

    # Phase timestamps (epoch seconds, UTC)
    early_access_open: int = 1_767_222_000
    public_open: int = 1_767_308_400
    sale_close: int = 1_767_913_200


settings = Settings()


# =============================================================================
# ALLOCATION CONTRACT SURFACE
# =============================================================================

# Global cap on base cards ever issued
MAX_SUPPLY = 2000

# Base cards that may be issued before early access closes to new buyers
MAX_EARLY_ACCESS = 500

# Units of a unique variant bought in one sale transaction
MAX_PER_TX = 2

# Combined sale transactions per address (shared early + public counter)
MAX_TX_PUBLIC = 2
MAX_TX_EARLY = 1

# Price of one unit, in settlement units
MINT_PRICE = 1

# Item id of the base card every allocation receives
CARD_ID_TO_MINT = 1

# Phase discriminator hashed into every early-access allowlist leaf
EARLY_ACCESS_PHASE_TAG = 2
