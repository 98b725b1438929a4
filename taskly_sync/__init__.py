"""Локальное хранилище задач с репликацией в CouchDB."""

__version__ = "0.1.0"
