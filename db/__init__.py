from .db import (
    Base,
    Task,
    User,
    as_utc,
    build_url,
    create_all,
    dispose_engine,
    make_engine,
    make_session_maker,
)  # noqa: F401
from .task_store import (
    DueCandidate,
    TaskNotFound,
    TaskTimeStore,
    UserNotFound,
)  # noqa: F401
