from .errors import error_response
from .clock import utcnow
