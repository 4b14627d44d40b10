from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from unsubscriber.config import get_settings

settings = get_settings()

connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(settings.database_url, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    # Import models so they register with Base before create_all
    import unsubscriber.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
