import os, pathlib
from typing import Optional

from argon2.low_level import Type
from pydantic import BaseModel, Field, field_validator

from .logging import default_log_path


def _default_home() -> pathlib.Path:
    return pathlib.Path.home() / ".local" / "share" / "familyvault"


class Argon2Settings(BaseModel):
    """Cost of the Argon2id derivation protecting the on-disk keystore."""
    time_cost: int = 3
    memory_kib: int = 256 * 1024
    parallelism: int = 2

    @field_validator("memory_kib")
    @classmethod
    def validate_memory(cls, v: int):
        if v < 8 * 1024:
            raise ValueError("memory_kib below 8 MiB is not accepted")
        return v

    def as_params(self) -> dict:
        return dict(
            time_cost=self.time_cost,
            memory_cost=self.memory_kib,
            parallelism=self.parallelism,
            hash_len=32,
            type=Type.ID,
        )


class Settings(BaseModel):
    home: pathlib.Path = Field(default_factory=_default_home)
    log_path: pathlib.Path = Field(default_factory=default_log_path)
    remote_db: Optional[pathlib.Path] = None
    argon2: Argon2Settings = Field(default_factory=Argon2Settings)

    @property
    def vaults_dir(self) -> pathlib.Path:
        return self.home / "vaults"

    @property
    def blobs_dir(self) -> pathlib.Path:
        return self.home / "blobs"

    @property
    def keystore_dir(self) -> pathlib.Path:
        return self.home / "keystore"

    @property
    def wrapped_keys_dir(self) -> pathlib.Path:
        return self.home / "wrapped"

    @property
    def legacy_dir(self) -> pathlib.Path:
        return self.home / "legacy"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        values = {}
        if env.get("FAMILYVAULT_HOME"):
            values["home"] = pathlib.Path(env["FAMILYVAULT_HOME"]).expanduser()
        if env.get("FAMILYVAULT_LOG"):
            values["log_path"] = pathlib.Path(env["FAMILYVAULT_LOG"]).expanduser()
        if env.get("FAMILYVAULT_REMOTE_DB"):
            values["remote_db"] = pathlib.Path(env["FAMILYVAULT_REMOTE_DB"]).expanduser()
        argon2 = {}
        for field, var in (
            ("time_cost", "FAMILYVAULT_ARGON2_TIME_COST"),
            ("memory_kib", "FAMILYVAULT_ARGON2_MEMORY_KIB"),
            ("parallelism", "FAMILYVAULT_ARGON2_PARALLELISM"),
        ):
            if env.get(var):
                argon2[field] = env[var]
        if argon2:
            values["argon2"] = Argon2Settings(**argon2)
        return cls(**values)
