import asyncio, logging, signal
import uvloop

from zlink_indexer.chain import ChainReader
from zlink_indexer.config import configure_logging, load_settings
from zlink_indexer.db import CheckpointStore, RecordStore, open_db
from zlink_indexer.decoder import EventDecoder
from zlink_indexer.errors import FatalSyncFailure
from zlink_indexer.indexer import BlockchainSync

logger = logging.getLogger("zlink_indexer")


async def main(settings) -> int:
    if not settings.enable_indexing:
        logger.info("Indexing is disabled, nothing to do")
        return 0

    conn = open_db(settings.db_path)
    reader = ChainReader.from_settings(settings)
    sync = BlockchainSync.from_settings(
        settings, reader, EventDecoder.from_settings(settings),
        CheckpointStore(conn), RecordStore(conn),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, sync.request_stop)

    logger.info("Starting zLink UTXOs indexer for %s", settings.contract_address)
    try:
        await sync.run()
    except FatalSyncFailure as e:
        logger.error("Fatal error in sync: %s", e)
        return 1
    finally:
        reader.close()
        conn.close()
    return 0


def run():
    settings = load_settings()
    configure_logging(settings.log_level)
    raise SystemExit(uvloop.run(main(settings)))


if __name__ == "__main__":
    run()
