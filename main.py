"""Main entry point for Conversation Sync.

Supports running:
- FastAPI server (REST, SSE and WebSocket push)
- A headless demo surface against a running server
"""

import argparse
import asyncio

from src.core.logger import logger


def run_api():
    """Run the FastAPI server."""
    logger.info("Starting FastAPI server...")
    import uvicorn
    from src.core.exceptions import ConfigurationError
    from src.core.settings import settings

    if settings.api.API_WORKERS != 1:
        # State and fan-out live in process memory; every client must reach the same worker.
        raise ConfigurationError(f"API_WORKERS must be 1, got {settings.api.API_WORKERS}")

    uvicorn.run(
        "src.api.main:app",
        host=settings.api.API_HOST,
        port=settings.api.API_PORT,
        workers=settings.api.API_WORKERS,
        reload=settings.api.API_RELOAD,
        log_level="info",
    )


def _auto_answer(surface) -> None:
    """Answer whatever the demo is waiting for: first option, first button, or the user's turn."""
    from src.models.conversation import PartType
    from src.sync import Phase

    message = surface.machine.current_message()
    if surface.phase is Phase.WAITING_USER_TURN:
        surface.user_responded()
    elif surface.phase is Phase.WAITING_OPTIONS and message is not None:
        options = message.first_part(PartType.OPTIONS)
        if options is not None and options.get("options"):
            surface.select_option(options.get("options")[0]["action"])
            return
        button = message.first_part(PartType.BUTTON)
        if button is not None:
            surface.press_button(button.get("action"))


async def _run_demo(auto: bool, poll_interval: float = 0.25):
    from src.core.exceptions import ProgressionError
    from src.core.settings import settings
    from src.sync import ConversationSurface, Phase, load_script
    from src.sync.api_client import ConversationApiClient

    script = load_script(settings.demo.DEMO_SCRIPT_PATH)
    user_id = settings.demo.DEMO_USER_ID or settings.api.DEFAULT_USER_ID

    async with ConversationApiClient(
        settings.demo.DEMO_API_BASE_URL,
        user_id,
        user_id_header=settings.api.USER_ID_HEADER,
    ) as client:
        surface = ConversationSurface(
            client,
            script,
            thinking_delay=settings.demo.THINKING_DELAY_MS / 1000,
            echo_window=settings.sync.ECHO_SUPPRESSION_MS / 1000,
            agent_switch_delay=settings.demo.AGENT_SWITCH_DELAY_MS / 1000,
            connect_delay=settings.demo.CONNECT_DELAY_MS / 1000,
            name="demo",
        )
        await surface.initialize()
        surface.start_push()

        last = None
        try:
            while surface.phase not in (Phase.DORMANT, Phase.SUSPENDED):
                current = (surface.phase, surface.state.current_index, surface.state.status)
                if current != last:
                    logger.info(
                        f"Demo at index {current[1]}/{len(script)}: {current[0].value} ({current[2].value})"
                    )
                    last = current
                if auto:
                    try:
                        _auto_answer(surface)
                    except ProgressionError as e:
                        logger.warning(f"Auto answer rejected: {e}")
                await asyncio.sleep(poll_interval)
        finally:
            await surface.close()

        logger.info(f"Demo finished at index {surface.state.current_index} with phase {surface.phase.value}")


def run_demo(auto: bool = False):
    """Run a headless surface against the configured API server."""
    logger.info("Starting headless demo surface...")
    try:
        asyncio.run(_run_demo(auto))
    except KeyboardInterrupt:
        logger.info("Demo interrupted")


def main():
    """Main entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        description="Conversation Sync - real-time conversation state across surfaces"
    )
    parser.add_argument(
        "mode",
        choices=["api", "demo"],
        default="api",
        nargs="?",
        help="Run mode: 'api' (FastAPI server, default) or 'demo' (headless surface)",
    )
    parser.add_argument(
        "--auto",
        action="store_true",
        help="In demo mode, answer options, buttons and user turns automatically",
    )

    args = parser.parse_args()

    logger.info(f"Starting Conversation Sync in '{args.mode}' mode...")

    if args.mode == "api":
        run_api()
    else:
        run_demo(auto=args.auto)


if __name__ == "__main__":
    main()
