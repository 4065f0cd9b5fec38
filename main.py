import asyncio
import logging
import signal
from pathlib import Path

from dotenv import load_dotenv
from openai import AsyncOpenAI

from core.chat_client import ChatClient, ChatClientOptions
from core.config import BotConfig, ConfigError, load_config
from core.conversation import ConversationStore
from core.handlers import MessageRouter
from core.storage import KeyValueStore
from transports.matrix_bot import MatrixTransport
from transports.matrix_client import MatrixClient, localpart_of

log = logging.getLogger("main")


async def login(config: BotConfig) -> None:
    client = MatrixClient(config.homeserver_url, "")
    try:
        token = await client.password_login(
            localpart_of(config.bot_username or ""), config.bot_password or ""
        )
    finally:
        await client.close()
    print(f"{config.homeserver_url} token: \n{token}")
    print("Set MATRIX_ACCESS_TOKEN to above token, MATRIX_BOT_PASSWORD can now be blank")


def build_chat_client(config: BotConfig, store: ConversationStore) -> ChatClient:
    options = ChatClientOptions(
        model=config.model,
        temperature=config.temperature,
        system_message=config.system_message or None,
        max_input_tokens=config.max_prompt_tokens,
        max_completion_tokens=config.max_response_tokens,
        first_chunk_size=config.first_chunk_size,
        use_two_chunks_for_first_reply=config.threads and config.use_two_chunks_for_first_reply,
        image_detail=config.image_detail,
        image_tokens=config.image_tokens,
    )
    openai_client = AsyncOpenAI(api_key=config.openai_api_key, base_url=config.openai_base_url)
    return ChatClient(openai_client, options, store)


async def main():
    load_dotenv()
    try:
        config = load_config()
    except ConfigError as exc:
        raise SystemExit(f"Invalid configuration: {exc}")
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s :: %(message)s")

    if not config.access_token:
        await login(config)
        return
    if not config.threads and config.context != "room":
        raise SystemExit("You must set CHATGPT_CONTEXT to 'room' if you set MATRIX_THREADS to false")
    if not config.model:
        log.warning("CHATGPT_API_MODEL is not set. Add it to your .env, e.g. 'gpt-4o-mini'")
        log.warning("Please note that the usage of the models charge your OpenAI account")
        return

    db = KeyValueStore(Path(config.data_path) / "bot.db", namespace="bot")
    conversations = ConversationStore(db.namespaced("chatgpt"))
    chat = build_chat_client(config, conversations)

    client = MatrixClient(config.homeserver_url, config.access_token, db)
    router = MessageRouter(client, chat, config, db)
    transport = MatrixTransport(client, router, config)

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    log.info("Starting bot using model: %s", config.model)
    log.info("Using system message: %s", config.system_message)
    matrix_task = asyncio.create_task(transport.start())
    stop_task = asyncio.create_task(stop_event.wait())

    await asyncio.wait({matrix_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    await transport.stop()
    stop_task.cancel()
    try:
        await matrix_task
    finally:
        await chat.client.close()
        db.close()


if __name__ == "__main__":
    asyncio.run(main())
