from paydesk.db.postgres import PostgresTxRunner

__all__ = ["PostgresTxRunner"]
