"""Minimal demo conversation used by the bundled runtime entry point."""

from __future__ import annotations

from html import escape

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from chatstate.callback import build_callback_data
from chatstate.dispatch import Context, Dispatcher
from chatstate.state import State, text_state

MENU = State("menu")
AWAITING_NAME = text_state("awaiting_name")

ASK_NAME_ACTION = "ask-name"
FORGET_ACTION = "forget"
ASK_NAME_TEXT = "Send me your name."


def _menu_markup() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton("Set name", callback_data=build_callback_data(ASK_NAME_ACTION))],
            [InlineKeyboardButton("Forget me", callback_data=build_callback_data(FORGET_ACTION))],
        ]
    )


def _menu_text(name: str | None) -> str:
    if name:
        return f"Hello, <b>{escape(name)}</b>!"
    return "Hello! I don't know your name yet."


async def start(ctx: Context) -> None:
    name = await ctx.session.get_value("name")
    await ctx.send_main(MENU, _menu_text(name), reply_markup=_menu_markup())
    await ctx.delete_history()


async def ask_name(ctx: Context) -> None:
    await ctx.edit_main(ASK_NAME_TEXT, state=AWAITING_NAME)


async def redraw_menu(ctx: Context) -> None:
    name = await ctx.session.get_value("name")
    await ctx.edit(ctx.event.message_id, _menu_text(name), state=MENU, reply_markup=_menu_markup())


async def redraw_name_prompt(ctx: Context) -> None:
    await ctx.edit(ctx.event.message_id, ASK_NAME_TEXT, state=AWAITING_NAME)


async def forget(ctx: Context) -> None:
    await ctx.session.clear_values()
    await ctx.edit_main(_menu_text(None), state=MENU, reply_markup=_menu_markup())
    await ctx.respond("Forgotten")


async def on_text(ctx: Context) -> None:
    if not ctx.text_message_id:
        return
    state, _ = await ctx.session.state_of(ctx.text_message_id)
    if state != AWAITING_NAME:
        return
    name = ctx.event.text.strip()[:64]
    await ctx.session.set_value("name", name)
    await ctx.edit(ctx.text_message_id, _menu_text(name), state=MENU, reply_markup=_menu_markup())


def register(dispatcher: Dispatcher) -> None:
    dispatcher.on_start(start)
    dispatcher.on_callback(ASK_NAME_ACTION, ask_name)
    dispatcher.on_callback(FORGET_ACTION, forget)
    dispatcher.on_text(on_text)
    dispatcher.on_init(MENU, redraw_menu)
    dispatcher.on_init(AWAITING_NAME, redraw_name_prompt)
