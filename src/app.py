import os
import logging
from typing import List, Optional

from chainlit.cli import run_chainlit
import chainlit as cl
from dotenv import load_dotenv

from pipeline import create_pipeline, KnowledgeBasePipeline
from auth import StubAuthenticator, can_edit
from decision_engine import can_finish
from seed_data import load_users
from schema import (
    DecisionEvent,
    DecisionView,
    DecisionStage,
    EventType,
    InstructionType,
    Language,
    Problem,
    SearchResultType,
    Config,
    KnowledgeBaseError,
    localize,
)

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

pipeline: KnowledgeBasePipeline = None

INSTRUCTION_TAGS = {
    InstructionType.TEXT: "",
    InstructionType.ACTION: "**[Action]** ",
    InstructionType.WARNING: "**[Warning]** ",
    InstructionType.INFO: "*[Info]* ",
}


def get_pipeline() -> KnowledgeBasePipeline:
    global pipeline

    if pipeline is None:
        logger.info("Khởi tạo pipeline...")

        redis_url = os.getenv("REDIS_URL")
        enable_monitoring = os.getenv("ENABLE_MONITORING", "true").lower() == "true"
        search_delay_ms = int(os.getenv("SEARCH_DEBOUNCE_MS", str(Config.SEARCH_DEBOUNCE_MS)))

        pipeline = create_pipeline(
            redis_url=redis_url,
            enable_monitoring=enable_monitoring,
            search_delay_ms=search_delay_ms
        )

        logger.info("Pipeline đã sẵn sàng")
        if enable_monitoring:
            logger.info("Monitoring: ENABLED")

    return pipeline


def get_language() -> Language:
    return cl.user_session.get("language") or Config.DEFAULT_LANGUAGE


# ==================== Rendering ====================

def render_view(problem: Problem, view: DecisionView, language: Language) -> str:
    lines = [f"## {localize(problem.title, problem.title_ar, language)}"]
    lines.append(f"Priority: **{problem.priority.value}** | Status: **{problem.status.value}**")

    if view.notice:
        lines.append(f"\n**Note:** {view.notice}")

    for faq in problem.faq_levels:
        if faq.level == view.faq_level:
            lines.append(f"\n**FAQ {faq.level}:** {localize(faq.question, faq.question_ar, language)}")
            lines.append(f"> {view.faq_answer}")

    if problem.verification_steps:
        lines.append("\n**Verification**")
        for step in sorted(problem.verification_steps, key=lambda s: s.order):
            mark = "x" if view.checklist.get(step.id) else " "
            required = " *(required)*" if step.is_required else ""
            lines.append(f"- [{mark}] {localize(step.step, step.step_ar, language)}{required}")

    resolution = view.resolution
    if resolution is not None:
        lines.append("\n**Resolution**")
        if not resolution.found:
            lines.append(resolution.message)
        else:
            for i, instruction in enumerate(resolution.instructions, start=1):
                text = localize(instruction.content, instruction.content_ar, language)
                lines.append(f"{i}. {INSTRUCTION_TAGS[instruction.type]}{text}")
            if resolution.script is not None:
                script = resolution.script
                lines.append(f"\n**Script:** {localize(script.title, script.title_ar, language)}")
                lines.append(f"```\n{localize(script.content, script.content_ar, language)}\n```")

    if view.stage == DecisionStage.DONE:
        lines.append("\n*Issue handled.*")

    return "\n".join(lines)


def view_actions(problem: Problem, view: DecisionView, language: Language) -> List[cl.Action]:
    actions: List[cl.Action] = []

    if view.stage == DecisionStage.DONE:
        actions.append(cl.Action(name="reset_session", payload={}, label="Start over"))
        actions.append(cl.Action(name="browse_categories", payload={}, label="New problem"))
        return actions

    for faq in problem.faq_levels:
        if faq.level != view.faq_level:
            actions.append(cl.Action(
                name="select_faq_level", payload={"level": faq.level}, label=f"FAQ {faq.level}"
            ))

    for step in problem.verification_steps:
        verb = "Uncheck" if view.checklist.get(step.id) else "Check"
        actions.append(cl.Action(
            name="toggle_step",
            payload={"step_id": step.id},
            label=f"{verb}: {localize(step.step, step.step_ar, language)}"
        ))

    actions.append(cl.Action(name="choose_clear", payload={}, label="Clear"))
    actions.append(cl.Action(name="choose_unclear", payload={}, label="Unclear"))

    path = problem.unclear_path
    state = get_pipeline().get_state(cl.user_session.get("session_id"))
    if state is not None and state.is_clear is False and path is not None:
        for option in sorted(path.primary_options, key=lambda o: o.order):
            selected = "* " if option.id == state.primary_option_id else ""
            actions.append(cl.Action(
                name="select_primary",
                payload={"option_id": option.id},
                label=f"{selected}{localize(option.label, option.label_ar, language)}"
            ))
        for option in sorted(path.secondary_options, key=lambda o: o.order):
            selected = "* " if option.id == state.secondary_option_id else ""
            actions.append(cl.Action(
                name="select_secondary",
                payload={"option_id": option.id},
                label=f"{selected}{localize(option.label, option.label_ar, language)}"
            ))

    resolution = view.resolution
    if resolution is not None and resolution.found and resolution.script is not None:
        actions.append(cl.Action(name="copy_script", payload={}, label="Copy script"))
    if can_finish(view.stage):
        actions.append(cl.Action(name="finish", payload={}, label="Finish"))

    actions.append(cl.Action(name="reset_session", payload={}, label="Reset"))
    return actions


async def send_view(view: DecisionView):
    language = get_language()
    problem = get_pipeline().kb.get_problem(view.problem_id)
    await cl.Message(
        content=render_view(problem, view, language),
        actions=view_actions(problem, view, language)
    ).send()


async def apply_event(event: DecisionEvent):
    session_id = cl.user_session.get("session_id")
    try:
        view = get_pipeline().handle_event(session_id, event, get_language())
    except KnowledgeBaseError as e:
        await cl.Message(content=f"Action rejected: {e}").send()
        return
    await send_view(view)


async def send_categories():
    language = get_language()
    actions = [
        cl.Action(
            name="select_category",
            payload={"category_id": c.id},
            label=localize(c.name, c.name_ar, language)
        )
        for c in get_pipeline().kb.list_categories()
    ]
    await cl.Message(content="Choose a category:", actions=actions).send()


# ==================== Chat lifecycle ====================

@cl.on_chat_start
async def on_chat_start():
    session_id = cl.user_session.get("id")
    cl.user_session.set("session_id", session_id)
    cl.user_session.set("language", Config.DEFAULT_LANGUAGE)
    cl.user_session.set("searcher", get_pipeline().create_searcher())
    cl.user_session.set("auth",StubAuthenticator(
        load_users(),
        admin_email=os.getenv("KB_ADMIN_EMAIL", Config.DEFAULT_ADMIN_EMAIL),
        admin_password=os.getenv("KB_ADMIN_PASSWORD", Config.DEFAULT_ADMIN_PASSWORD),
    ))

    welcome_message = """**ClearPath Knowledge Base**

Browse a category to work through a problem, or type any text to search problems, scripts and categories.

Commands:
* `/en`, `/ar`: switch language
* `/latest`: latest editorial updates
* `/login <email> <password>`, `/logout`"""

    await cl.Message(content=welcome_message).send()
    await send_categories()
    logger.info(f"Phiên mới: {session_id}")


@cl.on_message
async def on_message(message: cl.Message):
    text = message.content.strip()
    bot = get_pipeline()

    if text in ("/en", "/ar"):
        language = Language.AR if text == "/ar" else Language.EN
        cl.user_session.set("language", language)
        await cl.Message(content=f"Language: {language.value}").send()
        try:
            await send_view(bot.current_view(cl.user_session.get("session_id"), language))
        except KnowledgeBaseError:
            await send_categories()
        return

    if text == "/latest":
        entries = bot.latest_updates()
        if not entries:
            await cl.Message(content="No updates yet.").send()
            return
        lines = [
            f"- {e.timestamp:%Y-%m-%d %H:%M} **{e.user_name}** {e.action.value} "
            f"{e.entity_type.value} *{e.entity_name}*"
            for e in entries
        ]
        await cl.Message(content="\n".join(lines)).send()
        return

    if text.startswith("/login"):
        parts = text.split()
        auth: StubAuthenticator = cl.user_session.get("auth")
        user = auth.login(parts[1], parts[2]) if len(parts) == 3 else None
        if user is None:
            await cl.Message(content="Invalid credentials").send()
        else:
            editing = "can edit" if can_edit(user) else "read only"
            await cl.Message(content=f"Logged in as {user.name} ({user.role.value}, {editing})").send()
        return

    if text == "/logout":
        cl.user_session.get("auth").logout()
        await cl.Message(content="Logged out").send()
        return

    results: Optional[list] = None
    async with cl.Step(name="Searching...") as step:
        try:
            results = await bot.search(text, cl.user_session.get("searcher"))
            step.output = f"{len(results)} results" if results is not None else "Superseded"
        except Exception as e:
            logger.error(f"Lỗi tìm kiếm: {e}", exc_info=True)
            step.output = "Search failed"

    if results is None:
        return
    if not results:
        await cl.Message(content=f"No results for \"{text}\"").send()
        return

    lines = []
    actions = []
    for r in results:
        lines.append(f"- **{r.title}** ({r.type.value}, {r.category}), relevance {r.relevance}")
        if r.type == SearchResultType.PROBLEM:
            actions.append(cl.Action(name="select_problem", payload={"problem_id": r.id}, label=r.title))
    await cl.Message(content="\n".join(lines), actions=actions).send()


# ==================== Taxonomy navigation ====================

@cl.action_callback("browse_categories")
async def on_browse_categories(action: cl.Action):
    await action.remove()
    await send_categories()


@cl.action_callback("select_category")
async def on_select_category(action: cl.Action):
    language = get_language()
    category_id = action.payload["category_id"]
    scenarios = get_pipeline().kb.list_scenarios(category_id)
    if not scenarios:
        await cl.Message(content="No scenarios in this category yet.").send()
        return
    actions = [
        cl.Action(
            name="select_scenario",
            payload={"category_id": category_id, "scenario_id": s.id},
            label=localize(s.name, s.name_ar, language)
        )
        for s in scenarios
    ]
    await cl.Message(content="Choose a scenario:", actions=actions).send()


@cl.action_callback("select_scenario")
async def on_select_scenario(action: cl.Action):
    language = get_language()
    problems = get_pipeline().kb.list_problems(
        category_id=action.payload["category_id"],
        scenario_id=action.payload["scenario_id"]
    )
    if not problems:
        await cl.Message(content="No problems in this scenario yet.").send()
        return
    actions = [
        cl.Action(
            name="select_problem",
            payload={"problem_id": p.id},
            label=f"{localize(p.title, p.title_ar, language)} ({p.priority.value})"
        )
        for p in problems
    ]
    await cl.Message(content="Choose a problem:", actions=actions).send()


@cl.action_callback("select_problem")
async def on_select_problem(action: cl.Action):
    session_id = cl.user_session.get("session_id")
    try:
        view = get_pipeline().start_session(session_id, action.payload["problem_id"], get_language())
    except KnowledgeBaseError as e:
        await cl.Message(content=f"Cannot open problem: {e}").send()
        return
    await send_view(view)


# ==================== Decision flow ====================

@cl.action_callback("select_faq_level")
async def on_select_faq_level(action: cl.Action):
    await apply_event(DecisionEvent(EventType.SELECT_FAQ_LEVEL, action.payload["level"]))


@cl.action_callback("toggle_step")
async def on_toggle_step(action: cl.Action):
    await apply_event(DecisionEvent(EventType.TOGGLE_VERIFICATION, action.payload["step_id"]))


@cl.action_callback("choose_clear")
async def on_choose_clear(action: cl.Action):
    await apply_event(DecisionEvent(EventType.CHOOSE_CLEAR))


@cl.action_callback("choose_unclear")
async def on_choose_unclear(action: cl.Action):
    await apply_event(DecisionEvent(EventType.CHOOSE_UNCLEAR))


@cl.action_callback("select_primary")
async def on_select_primary(action: cl.Action):
    await apply_event(DecisionEvent(EventType.SELECT_PRIMARY, action.payload["option_id"]))


@cl.action_callback("select_secondary")
async def on_select_secondary(action: cl.Action):
    await apply_event(DecisionEvent(EventType.SELECT_SECONDARY, action.payload["option_id"]))


@cl.action_callback("finish")
async def on_finish(action: cl.Action):
    await action.remove()
    await apply_event(DecisionEvent(EventType.FINISH))


@cl.action_callback("reset_session")
async def on_reset_session(action: cl.Action):
    await action.remove()
    await apply_event(DecisionEvent(EventType.RESET))


@cl.action_callback("copy_script")
async def on_copy_script(action: cl.Action):
    session_id = cl.user_session.get("session_id")
    # Server không có clipboard: gửi script thành một message riêng để agent copy
    text = get_pipeline().copy_script(session_id, get_language())
    if text is None:
        await cl.Message(content="No script available for this resolution.").send()
        return
    await cl.Message(content=f"```\n{text}\n```").send()


@cl.on_chat_end
async def on_chat_end():
    session_id = cl.user_session.get("session_id")

    if session_id:
        try:
            get_pipeline().clear_session(session_id)
            logger.info(f"Kết thúc phiên: {session_id}")
        except Exception as e:
            logger.error(f"Lỗi xóa phiên: {e}")


if __name__ == "__main__":
    run_chainlit(__file__)
