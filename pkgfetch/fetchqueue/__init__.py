from . fetch_queue import (FetchPool, Task, Try, Cancelation, FetchQueueFullError, FetchPoolClosedError, new_pool,
                           MAX_FETCHES_BUFFER, MAX_CANCELATIONS_BUFFER, DEFAULT_CANCELATION_EXPIRY_SECONDS)
