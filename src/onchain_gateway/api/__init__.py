# Gateway Node API
#
# FastAPI application exposing the local ledger over HTTP.

from .main import build_ledger, create_app, start_api_server

__all__ = ["build_ledger", "create_app", "start_api_server"]
