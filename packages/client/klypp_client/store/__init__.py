from .base import ChangeChannel, Filter, FilterLike, Match, RelationalStore, eq  # noqa: F401
from .rest import RestStore  # noqa: F401
from .sse import SSEChangeChannel  # noqa: F401
