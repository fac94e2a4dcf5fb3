from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    """
    Centralized application settings. Pydantic's BaseSettings will automatically
    load these from environment variables or a .env file.
    """
    # --- Ontology Configuration ---
    ONTOLOGY_STORE_PATH: str = Field("ontology_store.json", description="Path to the versioned ontology store.")

    # --- Slot Definition Service ---
    SLOT_DEFINITION_SERVICE_URL: str = Field("http://127.0.0.1:3000", description="Base URL of the service exposing /api/slot-definition-sets.")
    SLOT_LOOKUP_TIMEOUT: float = Field(10.0, description="Timeout in seconds for a slot-definition lookup.")

    # --- Marker Store ---
    MARKER_STORE: Literal["neo4j", "memory"] = Field("neo4j", description="Which marker store backend to use.")
    NEO4J_URI: str = Field("", description="Bolt URI of the Neo4j marker store.")
    NEO4J_USERNAME: str = Field("", description="Username for the Neo4j marker store.")
    NEO4J_PASSWORD: str = Field("", description="Password for the Neo4j marker store.")

    # --- System Parameters ---
    LOG_LEVEL: str = Field("INFO", description="Log level for all application loggers.")
    CORS_ORIGINS: List[str] = Field(["http://localhost", "http://localhost:3000"], description="Origins allowed to call the API.")

    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

settings = Settings()
