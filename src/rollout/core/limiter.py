from slowapi import Limiter
from slowapi.util import get_remote_address

# Mutating rollout endpoints are limited per client IP
limiter = Limiter(key_func=get_remote_address)
