from .sefaz_status import SefazStatus
from .nfe_document import NfeDocument

__all__ = [
    "SefazStatus",
    "NfeDocument",
]
