"""Fulfillment — material-order fulfillment orchestrator."""
