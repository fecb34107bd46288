#!/usr/bin/env python3
"""
Meal Chat: log meals to Cronometer by chatting.

Terminal front end for the conversation engine. Type a meal, answer the
follow-up questions, then /save. Use /photo <path> to send an image.
"""

import argparse
import asyncio
import getpass
import logging
import sys
from datetime import datetime

from app_config import DEFAULTS, load_settings, load_user_config, save_user_config
from conversation import LoginAuthProvider, MealConversation
from cronometer import CronometerClient
from food_resolver import FoodResolver
from meal_parser import OpenAIImageReader, OpenAIMealParser, RetryingMealParser
from meal_validation import MealValidator
from preference_store import JsonFilePreferenceStore
from state_processors import Services
from user_memory import UserMemory

logger = logging.getLogger("meal_chat")

CHAT_ID = "terminal"
SWEEP_INTERVAL_SECONDS = 60


def build_conversation(settings, use_memory=True):
    """Wire the real collaborators together."""
    catalog = CronometerClient(settings.cronometer_base_url)
    resolver = FoodResolver(catalog)
    memory = UserMemory(JsonFilePreferenceStore(settings.preferences_file)) if use_memory else None
    parser = RetryingMealParser(
        OpenAIMealParser(api_key=settings.openai_api_key, model=settings.openai_model),
        attempts=settings.parser_max_attempts,
    )
    services = Services(
        parser=parser,
        resolver=resolver,
        validator=MealValidator(resolver, catalog, memory),
        memory=memory,
        image_reader=OpenAIImageReader(api_key=settings.openai_api_key, model=settings.openai_model),
    )
    return MealConversation(
        services,
        LoginAuthProvider(catalog, fallback=settings.catalog_auth()),
        timeout=settings.session_timeout,
    )


def run_setup():
    """Ask for the secrets once and keep them in ~/.meal_chat/config.json."""
    config = load_user_config()
    print("Meal Chat setup. Press Enter to keep the current value.\n")
    for key in ("OPENAI_API_KEY", "CRONOMETER_USER_ID", "CRONOMETER_TOKEN"):
        current = config.get(key, DEFAULTS[key])
        shown = "(set)" if current else "(empty)"
        prompt = f"{key} {shown}: "
        value = getpass.getpass(prompt) if "KEY" in key or "TOKEN" in key else input(prompt)
        if value.strip():
            config[key] = value.strip()
    save_user_config(config)
    print("\nSaved.")


def _print_replies(messages):
    for m in messages:
        print(f"\n  Bot: {m.text}\n")


async def _sweep_loop(conversation, stop):
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=SWEEP_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            _print_replies(await conversation.sweep_expired_sessions())


async def run_terminal_chat(conversation):
    print(f"\n{'═' * 50}")
    print("  Meal Chat for Cronometer")
    print(f"  {datetime.now().strftime('%A, %B %d %Y, %I:%M %p')}")
    print(f"{'═' * 50}\n")
    print("  /login <email> <password> to connect, /start to log a meal,")
    print("  /photo <path> to send a picture, /quit to exit.\n")

    stop = asyncio.Event()
    sweeper = asyncio.create_task(_sweep_loop(conversation, stop))
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "  You: ")
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line in ("/quit", "/exit"):
                break

            if line.startswith("/photo "):
                path = line[len("/photo "):].strip()
                try:
                    with open(path, "rb") as f:
                        image = f.read()
                except OSError as exc:
                    print(f"\n  Could not open {path}: {exc}\n")
                    continue
                replies = await conversation.handle_inbound_image(CHAT_ID, image)
            else:
                replies = await conversation.handle_inbound_text(CHAT_ID, line)
            _print_replies(replies)
    finally:
        stop.set()
        await sweeper


# ── Main ──────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="Log meals to Cronometer by chatting")
    parser.add_argument("--setup", action="store_true", help="Store API keys in ~/.meal_chat/config.json and exit")
    parser.add_argument("--no-memory", action="store_true", help="Don't learn or apply aliases and preferences")
    parser.add_argument("--log-level", type=str, default=None, help="Override LOG_LEVEL (DEBUG, INFO, ...)")
    args = parser.parse_args()

    if args.setup:
        run_setup()
        sys.exit(0)

    settings = load_settings()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not settings.openai_api_key:
        print("Missing OPENAI_API_KEY in .env!")
        print("Add it like: OPENAI_API_KEY=sk-...  (or run with --setup)")
        sys.exit(1)
    if settings.catalog_auth() is None:
        print("No Cronometer credentials in .env; log in from the chat with /login <email> <password>.")

    conversation = build_conversation(settings, use_memory=not args.no_memory)
    asyncio.run(run_terminal_chat(conversation))


if __name__ == "__main__":
    main()
