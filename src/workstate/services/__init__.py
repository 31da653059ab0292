"""Persistence services: merge engine, scope resolution and bindings."""
