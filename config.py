from typing import Optional, List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # MongoDB
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "ewaste_marketplace"

    # Cloudinary (image uploads)
    CLOUDINARY_CLOUD_NAME: Optional[str] = None
    CLOUDINARY_API_KEY: Optional[str] = None
    CLOUDINARY_API_SECRET: Optional[str] = None
    CLOUDINARY_FOLDER: str = "image_uploads"

    # Wallets allowed to moderate listing status, comma separated
    ADMIN_WALLETS: str = ""

    ALLOWED_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000

    @property
    def admin_wallets(self) -> set:
        return {w.strip() for w in self.ADMIN_WALLETS.split(",") if w.strip()}

    @property
    def allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()] or ["*"]

    @property
    def cloudinary_enabled(self) -> bool:
        return all([self.CLOUDINARY_CLOUD_NAME, self.CLOUDINARY_API_KEY, self.CLOUDINARY_API_SECRET])
