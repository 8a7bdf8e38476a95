import asyncio
import signal
import sys

from dotenv import load_dotenv
from loguru import logger

from thread_runtime.app_config import load_json_config, parse_app_config, resolve_runtime_env
from thread_runtime.bootstrap import bootstrap_runtime
from thread_runtime.shell import ThreadShell


def _install_stop_handler(shell: ThreadShell) -> bool:
    """Route Ctrl-C to ``stop()`` while a turn streams. Not available on every platform."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(shell.stop()))
    except (NotImplementedError, RuntimeError):
        return False
    return True


def _remove_stop_handler() -> None:
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
    except (NotImplementedError, RuntimeError):
        pass


async def main() -> None:
    load_dotenv()

    try:
        app = parse_app_config(load_json_config())
    except ValueError as ex:
        logger.error(f"Invalid config.json: {ex}")
        sys.exit(1)
    env = resolve_runtime_env()
    if not env.user_id:
        logger.error("THREAD_RUNTIME_USER_ID environment variable is required.")
        sys.exit(1)

    runtime = await bootstrap_runtime(app, env)
    shell = ThreadShell(runtime.controller, runtime.resolver)

    print("thread-runtime (type 'exit' to quit, '/help' for commands)")
    print(f"User: {env.user_id}")
    print(f"Persistence: {app.persistence_mode} ({app.memory_db_path if runtime.memory_store else app.api_base_url})")
    print(f"Chat endpoint: {app.api_base_url}{app.chat_endpoint}")
    print(f"Model: {runtime.resolver.default_selection().label}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            stop_installed = _install_stop_handler(shell)
            try:
                print()
                await shell.handle(trimmed)
                print()
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
            finally:
                if stop_installed:
                    _remove_stop_handler()
    finally:
        await runtime.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
