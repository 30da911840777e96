"""Named runtime settings kept in the ``settings`` table.

Admin-tunable switches (COD availability, default delivery charge) live here
instead of module globals so every worker sees the same value.
"""
import logging
from typing import Any

from sqlalchemy.orm import Session

from models.setting import Setting

logger = logging.getLogger(__name__)

COD_ENABLED = "COD_ENABLED"
DEFAULT_DELIVERY_CHARGE = "DEFAULT_DELIVERY_CHARGE"


def get_value(db: Session, key: str, default: Any = None) -> Any:
    setting = (
        db.query(Setting)
        .filter(Setting.key == key.upper(), Setting.is_active.is_(True))
        .one_or_none()
    )
    return setting.value if setting is not None else default


def set_value(db: Session, key: str, value: Any, description: str = "", category: str = "GENERAL") -> Setting:
    setting = db.query(Setting).filter(Setting.key == key.upper()).one_or_none()
    if setting is None:
        setting = Setting(key=key, value=value, description=description, category=category)
        db.add(setting)
    else:
        setting.value = value
        setting.is_active = True
        if description:
            setting.description = description
    db.flush()
    logger.info("Setting %s updated to %r", setting.key, value)
    return setting


def is_cod_enabled(db: Session) -> bool:
    return bool(get_value(db, COD_ENABLED, True))
