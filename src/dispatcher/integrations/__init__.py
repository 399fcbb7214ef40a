"""Record-system integration: Pipedrive REST client."""

from dispatcher.integrations.pipedrive import PipedriveClient

__all__ = ["PipedriveClient"]
