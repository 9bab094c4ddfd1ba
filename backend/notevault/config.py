import logging
import os
from typing import Literal

from pydantic import BaseModel


class Settings(BaseModel):
    data_dir: str = "./vault-data"
    code_ttl_seconds: float = 15 * 60
    oracle_url: str = ""  # empty -> local code registry under data_dir
    oracle_token: str = ""
    oracle_result_path: str = "@"
    oracle_workspace_id: str = ""
    oracle_has_rpc: str = "has_user_vault_code"
    to_vaulted_policy: Literal["all_or_nothing", "best_effort"] = "all_or_nothing"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = {
            "data_dir": os.getenv("NOTEVAULT_DATA_DIR"),
            "code_ttl_seconds": os.getenv("NOTEVAULT_CODE_TTL"),
            "oracle_url": os.getenv("NOTEVAULT_ORACLE_URL"),
            "oracle_token": os.getenv("NOTEVAULT_ORACLE_TOKEN"),
            "oracle_result_path": os.getenv("NOTEVAULT_ORACLE_RESULT_PATH"),
            "oracle_workspace_id": os.getenv("NOTEVAULT_ORACLE_WORKSPACE"),
            "oracle_has_rpc": os.getenv("NOTEVAULT_ORACLE_HAS_RPC"),
            "to_vaulted_policy": os.getenv("NOTEVAULT_TOVAULTED_POLICY"),
            "log_level": os.getenv("NOTEVAULT_LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in env.items() if v not in (None, "")})


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("notevault").setLevel(getattr(logging, str(level).upper(), logging.INFO))
