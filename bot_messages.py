"""User-facing texts."""

# ── Session ───────────────────────────────────────────────────────────────

NEW_SESSION = (
    "🍽️ New meal log started.\n\n"
    "Tell me what you ate, e.g. \"2 huevos grandes y 100g de arroz en el desayuno\", "
    "or send a photo of your list.\n"
    "/cancel stops at any time."
)
EXPIRED = "⏰ Your previous session expired after inactivity. Use /start to begin a new one."
ALREADY_ACTIVE = "⚠️ You already have an active session. Use /cancel to drop it first."
NO_ACTIVE_SESSION = "There is no active session to cancel."
CANCELLED = "❌ Session cancelled. Use /start to begin a new one."
USE_START = "💡 To log a meal, send /start first."
STILL_PROCESSING = "⏳ Still working on your previous message, one moment."
LOGIN_REQUIRED = "⚠️ No Cronometer account is linked to this chat. Log in with /login <email> <password>."

# ── Login ─────────────────────────────────────────────────────────────────

LOGIN_USAGE = "Use: /login <email> <password>"
LOGIN_SUCCESS = (
    "✅ Logged in.\n\n"
    "Use /start to log a meal, or /preferences to manage your saved preferences."
)
LOGIN_FAILED = "❌ Cronometer did not accept those credentials. Please check them and try again."
LOGIN_UNAVAILABLE = "⚠️ This chat uses a fixed Cronometer account; /login is not available."
AUTH_ERROR = "❌ Could not reach your Cronometer account right now. Please try again."

# ── Errors ────────────────────────────────────────────────────────────────

PROCESSING_ERROR = "❌ Something went wrong processing your message. Please try again."
CLARIFICATION_ERROR = "❌ Something went wrong processing your answer. Please try again."
CHANGE_ERROR = "❌ Something went wrong applying your change. Please try again."
PARSE_FAILED = "🤷 I couldn't find any food in that. Could you describe the meal again?"
SEARCH_ERROR = "❌ Search failed. Please try again."

# ── Save ──────────────────────────────────────────────────────────────────

NOTHING_TO_SAVE = "⚠️ Nothing is waiting to be saved. Use /start to log a meal."
SAVE_FAILED = "❌ Saving to Cronometer failed. Send /save to try again."
SAVED = "✅ Saved! Your meal is in Cronometer."
NO_PREFERENCES_SAVED = "👍 Got it, nothing was remembered. Use /start to log another meal."
INVALID_MEMORY_ANSWER = "Please answer yes, no, or the numbers to remember (e.g. 1,3)."

# ── Photos ────────────────────────────────────────────────────────────────

PHOTO_NOT_ALLOWED = "⚠️ Photos are only accepted when starting a meal. Use /cancel first."
NO_TEXT_DETECTED = "❌ I couldn't read any text in that image. Try a clearer photo or type the meal."
OCR_ERROR = "❌ Something went wrong reading the image. Try again or type the meal."
CONTINUE_ONLY_AFTER_PHOTO = "⚠️ /continue only works after sending a photo."

# ── Preferences ───────────────────────────────────────────────────────────

MEMORY_UNAVAILABLE = "⚠️ Preferences are not available right now."
PREFERENCES_MENU = (
    "⚙️ Preferences\n\n"
    "1. Create an alias\n"
    "2. Delete an alias\n"
    "3. Exit"
)
INVALID_OPTION = "Please answer 1, 2 or 3."
INVALID_NUMBER = "Please answer with a valid number, or /cancel to leave."
CREATE_ALIAS_PROMPT = (
    "📝 New alias\n\n"
    "Type the word you use for the food (e.g. \"pan de la casa\")."
)
NO_ALIASES_TO_DELETE = "You have no aliases to delete. Use /preferences to go back to the menu."
EXITED_PREFERENCES = "👋 Left preferences. Use /start to log a meal."
NO_SEARCH_RESULTS = "❌ No results. Try another search term:"
NO_ALTERNATIVES = "No alternatives found. Try writing a different name."
SEARCH_USAGE = "Usage: /search <food name>\nExample: /search chicken breast"


# ── Formatting ────────────────────────────────────────────────────────────

def format_clarifications(items):
    """One question as-is; several as a numbered list."""
    if len(items) == 1:
        return f"🤔 I need a bit more information:\n\n{items[0].question}"
    lines = [f"{i}. {c.question}" for i, c in enumerate(items, 1)]
    return "🤔 I need a bit more information:\n\n" + "\n".join(lines) + \
        "\n\nAnswer in order, one per line or separated by commas."


def not_found_question(name):
    return f"I couldn't find \"{name}\". What else could it be called?"


def format_not_found(names):
    listed = ", ".join(f"\"{n}\"" for n in names)
    return f"🔍 I couldn't find {listed} in Cronometer."


def size_question(name):
    return f"What size was the {name}? (small, medium, large)"


def format_confirmation(items, category=None):
    lines = ["📋 Here is what I understood"]
    if category:
        lines[0] += f" for {category.lower()}"
    lines[0] += ":\n"
    for i, item in enumerate(items, 1):
        marker = " ⭐" if item.from_alias else ""
        lines.append(f"{i}. {item.food_name}: {item.display_quantity}{marker}")
    lines.append("")
    lines.append("/save to log it, a number to pick a different food, "
                 "or type a correction.")
    return "\n".join(lines)


def format_search_results(candidates, heading="Results:"):
    lines = [heading]
    for i, c in enumerate(candidates, 1):
        lines.append(f"{i}. {c.food.name} ({c.tier.value.lower()})")
    return "\n".join(lines)


def format_alternatives(item, candidates):
    heading = f"🔄 Alternatives for \"{item.original_name}\" (currently {item.food_name}):"
    return format_search_results(candidates, heading) + "\n\nReply with a number."


def format_learnings(learnings):
    lines = ["🧠 Should I remember these for next time?\n"]
    for i, learning in enumerate(learnings, 1):
        lines.append(f"{i}. \"{learning.term}\" → {learning.food_name}")
    lines.append("\nReply yes, no, or the numbers to remember (e.g. 1,3).")
    return "\n".join(lines)


def format_memory_saved(count):
    return f"🧠 Remembered {count} preference{'s' if count != 1 else ''}. Use /start to log another meal."


def format_alias_list(aliases):
    lines = ["🗑️ Which alias should I delete?\n"]
    for i, alias in enumerate(aliases, 1):
        lines.append(f"{i}. \"{alias.term}\" → {alias.food_name}")
    return "\n".join(lines)


def alias_saved(term, food_name):
    return f"✅ \"{term}\" now means {food_name}."


def alias_deleted(term):
    return f"✅ Alias \"{term}\" deleted."


def ocr_received(text):
    return (
        f"📝 Text detected:\n\n{text}\n\n"
        "Type any corrections, or /continue to use it as is."
    )
