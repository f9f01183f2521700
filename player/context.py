"""
Player context: builds the playback core once and tears it down in order.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from player.cache import AudioCacheManager
from player.connectivity import Connectivity
from player.engine import AudioEngine
from player.engine_adapter import PlaybackEngineAdapter
from player.events import EventBus
from player.library import LibraryManager
from player.media_session import MediaSessionBridge
from player.orchestrator import PlaybackOrchestrator
from player.platform import WakeLock, default_wake_lock
from player.queue_manager import PlaybackQueue
from player.scheduler import Scheduler, ThreadScheduler
from shared.config import PlayerConfig, load_config
from shared.storage import LibraryStore
from shared.sync_api import SyncApiClient, build_session

# Try to import engine, handle missing libmpv
try:
    from player.mpv_engine import MpvAudioEngine
    MPV_AVAILABLE = True
except OSError:
    MpvAudioEngine = None
    MPV_AVAILABLE = False

logger = logging.getLogger(__name__)


@dataclass
class PlayerContext:
    """Everything the front end needs, constructed once per process."""
    config: PlayerConfig
    bus: EventBus
    scheduler: Scheduler
    api: SyncApiClient
    store: LibraryStore
    library: LibraryManager
    cache: AudioCacheManager
    engine: AudioEngine
    adapter: PlaybackEngineAdapter
    queue: PlaybackQueue
    orchestrator: PlaybackOrchestrator
    media_session: MediaSessionBridge
    wake_lock: WakeLock

    @classmethod
    def create(cls, config: Optional[PlayerConfig] = None,
               engine: Optional[AudioEngine] = None,
               scheduler: Optional[Scheduler] = None,
               wake_lock: Optional[WakeLock] = None,
               store: Optional[LibraryStore] = None) -> 'PlayerContext':
        """
        Wire up the playback core and start the orchestrator.

        Raises RuntimeError when no engine is given and libmpv is missing.
        """
        config = config or load_config()
        if engine is None:
            if not MPV_AVAILABLE:
                raise RuntimeError("libmpv is not installed")
            engine = MpvAudioEngine(volume=config.volume,
                                    load_timeout=config.engine_setup_timeout)

        session = build_session()
        api = SyncApiClient(config.api_base_url, session=session,
                            timeout=config.network_timeout,
                            probe_timeout=config.probe_timeout)
        store = store or LibraryStore()
        connectivity = Connectivity(probe=api.is_reachable)
        scheduler = scheduler or ThreadScheduler()
        bus = EventBus()

        cache = AudioCacheManager(
            config.cache_dir,
            stream_url=api.stream_url,
            session=session,
            connectivity=connectivity,
            max_size_bytes=config.cache_max_size_bytes,
            attempts=config.download_attempts,
            timeout=config.network_timeout,
        )
        adapter = PlaybackEngineAdapter(engine, bus)
        queue = PlaybackQueue()
        wake_lock = wake_lock or default_wake_lock()
        orchestrator = PlaybackOrchestrator(
            queue, cache, adapter, bus, scheduler, connectivity, wake_lock,
            stream_url=api.stream_url, config=config,
        )
        orchestrator.start()

        context = cls(
            config=config,
            bus=bus,
            scheduler=scheduler,
            api=api,
            store=store,
            library=LibraryManager(api, store),
            cache=cache,
            engine=engine,
            adapter=adapter,
            queue=queue,
            orchestrator=orchestrator,
            media_session=MediaSessionBridge(orchestrator, bus),
            wake_lock=wake_lock,
        )
        logger.debug("Player context ready (cache at %s)", cache.root)
        return context

    def close(self) -> None:
        """Stop playback, timers and background work, then release resources."""
        self.media_session.close()
        self.orchestrator.shutdown()
        self.scheduler.shutdown()
        self.cache.close()
        self.engine.close()
        self.bus.clear()
        logger.debug("Player context closed")
