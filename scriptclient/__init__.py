from scriptclient.client import ClientState, SimpleClient

__all__ = ["ClientState", "SimpleClient"]
