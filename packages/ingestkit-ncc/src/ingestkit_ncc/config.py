"""Configuration model for the ingestkit-ncc pipeline.

Provides ``NCCIngestConfig`` with all tunable parameters and sensible
defaults.  Supports loading overrides from YAML or JSON files via the
``from_file()`` classmethod.
"""

from __future__ import annotations

import json
import pathlib

from pydantic import BaseModel, Field


class NCCIngestConfig(BaseModel):
    """All tunable parameters with sensible defaults.

    Override individual values via constructor kwargs or load a complete
    config from a file with ``NCCIngestConfig.from_file(path)``.
    """

    # --- Identity ---
    parser_version: str = "ingestkit_ncc:1.0.0"
    tenant_id: str | None = None

    # --- Archive discovery ---
    source_folder_names: list[str] = ["xml", "xmls"]
    asset_folder_names: list[str] = ["images", "image"]
    hidden_path_prefixes: list[str] = [".", "__MACOSX"]
    asset_extensions: list[str] = [
        ".jpg",
        ".jpeg",
        ".png",
        ".svg",
        ".webp",
        ".gif",
        ".pdf",
    ]

    # --- Classification ---
    document_root_tags: list[str] = ["clause", "specification"]

    # --- Security limits (per archive entry) ---
    max_entry_size_mb: int = 50
    max_depth: int = 100

    # --- Batching ---
    batch_size: int = Field(
        default=5,
        ge=1,
        description="Maximum files processed per chunked invocation.",
    )
    time_budget_seconds: float = Field(
        default=50.0,
        gt=0.0,
        description="Wall-clock budget for one chunked invocation.",
    )

    # --- Assets ---
    asset_key_prefix: str = "ncc"
    asset_upload_workers: int = Field(default=4, ge=1)

    # --- Extraction ---
    persist_raw_xml: bool = False
    node_hash_text_prefix: int = 200

    # --- Backend resilience ---
    backend_timeout_seconds: float = 30.0
    backend_max_retries: int = 2
    backend_backoff_base: float = 1.0

    # --- Enqueue ---
    enqueue_url: str | None = None
    enqueue_token: str | None = None

    # --- Object storage ---
    presigned_url_expiry_seconds: int = 3600

    @classmethod
    def from_file(cls, path: str) -> NCCIngestConfig:
        """Load configuration from a YAML or JSON file.

        File format is detected by extension: ``.yaml`` / ``.yml`` for YAML,
        ``.json`` for JSON.  Keys not present in the file retain their
        defaults.

        Raises:
            FileNotFoundError: If *path* does not exist.
            ValueError: If the file extension is not recognized.
        """
        file_path = pathlib.Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        suffix = file_path.suffix.lower()

        if suffix in (".yaml", ".yml"):
            import yaml  # type: ignore[import-untyped]

            with open(file_path) as fh:
                data = yaml.safe_load(fh)
        elif suffix == ".json":
            with open(file_path) as fh:
                data = json.load(fh)
        else:
            raise ValueError(
                f"Unsupported config file extension '{suffix}'. "
                "Use .yaml, .yml, or .json."
            )

        if data is None:
            data = {}

        return cls(**data)
