from .organization import OrgResponse

__all__ = ["OrgResponse"]
