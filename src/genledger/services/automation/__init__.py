"""Automation collaborators used to re-issue prompts."""

from genledger.services.automation.generator_client import Generator, HttpGeneratorClient

__all__ = ["Generator", "HttpGeneratorClient"]
