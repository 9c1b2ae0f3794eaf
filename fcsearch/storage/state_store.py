from abc import ABC, abstractmethod
from typing import List, Optional

from fcsearch.data.models import ChannelBookkeeping


class StateStore(ABC):
    """
    Abstract base class for the operational bookkeeping store.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Open the store and verify it is usable. Raises StateStoreError if not."""
        pass

    @abstractmethod
    def load_channel(self, name: str) -> Optional[ChannelBookkeeping]:
        """Get the persisted bookkeeping for a channel, if any."""
        pass

    @abstractmethod
    def save_channel(self, record: ChannelBookkeeping) -> None:
        """Create or replace the bookkeeping for a channel."""
        pass

    @abstractmethod
    def list_channels(self) -> List[ChannelBookkeeping]:
        """All persisted channels, ordered by name."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the underlying resources."""
        pass
