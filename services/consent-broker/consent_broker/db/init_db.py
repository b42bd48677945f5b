from sqlalchemy.engine import Engine
from consent_broker.db.base import Base
import consent_broker.models.consent  # noqa: F401  registers the table

def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
