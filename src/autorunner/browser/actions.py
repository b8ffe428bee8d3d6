"""
Browser actions - Playwright page operations keyed as ``playwright:<name>``.

Each action validates its config, drives the loop index's page and returns
a success message; PluginAction turns that into the terminal event.
"""

from typing import Any, Literal, Optional

import structlog
from pydantic import Field, model_validator

from ..core.config import DEFAULT_SCREENSHOT_PATH
from ..core.errors import BrowserError, FrameworkError
from ..engine.context import ExecutionFrame
from ..engine.registry import ActionSchema, PluginAction

logger = structlog.get_logger()


def _options(**kwargs) -> dict[str, Any]:
    """Drop unset keyword options before handing them to Playwright."""
    return {k: v for k, v in kwargs.items() if v is not None}


class SelectorSchema(ActionSchema):
    selector: str = Field(min_length=1)
    timeout: Optional[float] = Field(default=None, ge=0)


class BrowserAction(PluginAction):
    """Base for actions that need the loop index's page."""

    def page(self, frame: ExecutionFrame) -> Any:
        page = frame.run.page
        if page is None:
            raise BrowserError(f"{self.action_type} requires a browser page",
                               action_type=self.action_type)
        return page

    def wrap_error(self, error: Exception, params: Any) -> FrameworkError:
        return BrowserError(
            f"{self.action_type} failed: {error}",
            selector=getattr(params, "selector", None),
            action_type=self.action_type,
        )


# ==================== Navigation ====================

class GotoSchema(ActionSchema):
    url: str = Field(min_length=1)
    wait_until: Optional[Literal["load", "domcontentloaded", "networkidle", "commit"]] = None
    timeout: Optional[float] = Field(default=None, ge=0)


class GotoAction(BrowserAction):
    action_type = "playwright:goto"
    schema = GotoSchema

    async def run(self, params: GotoSchema, frame: ExecutionFrame) -> str:
        frame.run.logger.info("playwright_goto", url=params.url)
        await self.page(frame).goto(
            params.url, **_options(wait_until=params.wait_until, timeout=params.timeout)
        )
        return f"Successfully navigated to {params.url}"


class LoadStateSchema(ActionSchema):
    state: Literal["load", "domcontentloaded", "networkidle"] = "load"
    timeout: Optional[float] = Field(default=None, ge=0)


class WaitForLoadStateAction(BrowserAction):
    action_type = "playwright:wait_for_load_state"
    schema = LoadStateSchema

    async def run(self, params: LoadStateSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).wait_for_load_state(
            params.state, **_options(timeout=params.timeout)
        )
        return f"Successfully waited for load state {params.state}"


class ReloadAction(BrowserAction):
    action_type = "playwright:reload"
    schema = LoadStateSchema

    async def run(self, params: LoadStateSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).reload(
            **_options(wait_until=params.state, timeout=params.timeout)
        )
        return "Successfully reloaded page"


class GoBackAction(BrowserAction):
    action_type = "playwright:go_back"

    async def run(self, params: ActionSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).go_back()
        return "Successfully navigated back"


class GoForwardAction(BrowserAction):
    action_type = "playwright:go_forward"

    async def run(self, params: ActionSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).go_forward()
        return "Successfully navigated forward"


class ViewportSchema(ActionSchema):
    width: int = Field(ge=1)
    height: int = Field(ge=1)


class SetViewportAction(BrowserAction):
    action_type = "playwright:set_viewport"
    schema = ViewportSchema

    async def run(self, params: ViewportSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).set_viewport_size({"width": params.width, "height": params.height})
        return f"Successfully set viewport to {params.width}x{params.height}"


# ==================== Element interaction ====================

class ClickSchema(SelectorSchema):
    force: Optional[bool] = None
    button: Optional[Literal["left", "right", "middle"]] = None
    click_count: Optional[int] = Field(default=None, ge=1)


class ClickAction(BrowserAction):
    action_type = "playwright:click"
    schema = ClickSchema

    async def run(self, params: ClickSchema, frame: ExecutionFrame) -> str:
        frame.run.logger.info("playwright_click", selector=params.selector)
        await self.page(frame).locator(params.selector).click(**_options(
            timeout=params.timeout,
            force=params.force,
            button=params.button,
            click_count=params.click_count,
        ))
        return f"Successfully clicked element {params.selector}"


class FillSchema(SelectorSchema):
    value: str


class FillAction(BrowserAction):
    action_type = "playwright:fill"
    schema = FillSchema

    async def run(self, params: FillSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).locator(params.selector).fill(
            params.value, **_options(timeout=params.timeout)
        )
        return f"Successfully filled element {params.selector} with value"


class TypeSchema(SelectorSchema):
    text: str
    delay: Optional[float] = Field(default=None, ge=0)


class TypeAction(BrowserAction):
    action_type = "playwright:type"
    schema = TypeSchema

    async def run(self, params: TypeSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).locator(params.selector).press_sequentially(
            params.text, **_options(delay=params.delay, timeout=params.timeout)
        )
        return f"Successfully typed text into element {params.selector}"


class PressSchema(SelectorSchema):
    key: str = Field(min_length=1)
    delay: Optional[float] = Field(default=None, ge=0)


class PressAction(BrowserAction):
    action_type = "playwright:press"
    schema = PressSchema

    async def run(self, params: PressSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).locator(params.selector).press(
            params.key, **_options(delay=params.delay, timeout=params.timeout)
        )
        return f"Successfully pressed key {params.key} on element {params.selector}"


class CheckSchema(SelectorSchema):
    force: Optional[bool] = None


class CheckAction(BrowserAction):
    action_type = "playwright:check"
    schema = CheckSchema

    async def run(self, params: CheckSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).locator(params.selector).check(
            **_options(force=params.force, timeout=params.timeout)
        )
        return f"Successfully checked element {params.selector}"


class UncheckAction(BrowserAction):
    action_type = "playwright:uncheck"
    schema = CheckSchema

    async def run(self, params: CheckSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).locator(params.selector).uncheck(
            **_options(force=params.force, timeout=params.timeout)
        )
        return f"Successfully unchecked element {params.selector}"


class SelectOptionSchema(SelectorSchema):
    values: list[str] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def accept_single_value(cls, data: Any) -> Any:
        # A single option may be given as ``value`` or as a bare string
        if isinstance(data, dict):
            data = dict(data)
            if "values" not in data and "value" in data:
                data["values"] = data["value"]
            if isinstance(data.get("values"), str):
                data["values"] = [data["values"]]
        return data


class SelectOptionAction(BrowserAction):
    action_type = "playwright:select_option"
    schema = SelectOptionSchema

    async def run(self, params: SelectOptionSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).locator(params.selector).select_option(
            params.values, **_options(timeout=params.timeout)
        )
        return f"Successfully selected options {params.values} in element {params.selector}"


class HoverAction(BrowserAction):
    action_type = "playwright:hover"
    schema = SelectorSchema

    async def run(self, params: SelectorSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).locator(params.selector).hover(**_options(timeout=params.timeout))
        return f"Successfully hovered over element {params.selector}"


class ScrollSchema(ActionSchema):
    selector: Optional[str] = None
    x: float = 0
    y: float = 0


class ScrollAction(BrowserAction):
    action_type = "playwright:scroll"
    schema = ScrollSchema

    async def run(self, params: ScrollSchema, frame: ExecutionFrame) -> str:
        page = self.page(frame)
        if params.selector:
            await page.locator(params.selector).scroll_into_view_if_needed()
            return f"Successfully scrolled element {params.selector} into view"
        await page.mouse.wheel(params.x, params.y)
        return f"Successfully scrolled by ({params.x}, {params.y})"


# ==================== Waiting ====================

class WaitForSelectorSchema(SelectorSchema):
    state: Literal["attached", "detached", "visible", "hidden"] = "visible"


class WaitForSelectorAction(BrowserAction):
    action_type = "playwright:wait_for_selector"
    schema = WaitForSelectorSchema

    async def run(self, params: WaitForSelectorSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).wait_for_selector(
            params.selector, **_options(state=params.state, timeout=params.timeout)
        )
        return f"Successfully waited for selector {params.selector}"


class WaitForTimeoutSchema(ActionSchema):
    timeout: float = Field(ge=0)


class WaitForTimeoutAction(BrowserAction):
    action_type = "playwright:wait_for_timeout"
    schema = WaitForTimeoutSchema

    async def run(self, params: WaitForTimeoutSchema, frame: ExecutionFrame) -> str:
        await self.page(frame).wait_for_timeout(params.timeout)
        return f"Successfully waited for {params.timeout:g}ms"


# ==================== Extraction ====================

class SaveAsSchema(ActionSchema):
    save_as: Optional[str] = None
    scope: Literal["local", "global"] = "local"


class GetTextSchema(SelectorSchema, SaveAsSchema):
    pass


class GetTextAction(BrowserAction):
    action_type = "playwright:get_text"
    schema = GetTextSchema

    async def run(self, params: GetTextSchema, frame: ExecutionFrame) -> str:
        text = await self.page(frame).locator(params.selector).text_content(
            **_options(timeout=params.timeout)
        )
        if params.save_as:
            frame.variables.set_runtime(params.save_as, text or "", params.scope)
        return f"Successfully got text from element {params.selector}: {text or ''}"


class GetAttributeSchema(SelectorSchema, SaveAsSchema):
    attribute: str = Field(min_length=1)


class GetAttributeAction(BrowserAction):
    action_type = "playwright:get_attribute"
    schema = GetAttributeSchema

    async def run(self, params: GetAttributeSchema, frame: ExecutionFrame) -> str:
        value = await self.page(frame).locator(params.selector).get_attribute(
            params.attribute, **_options(timeout=params.timeout)
        )
        if params.save_as:
            frame.variables.set_runtime(params.save_as, value, params.scope)
        return (
            f"Successfully got attribute {params.attribute} from element "
            f"{params.selector}: {value if value is not None else ''}"
        )


class EvaluateSchema(SaveAsSchema):
    expression: str = Field(min_length=1)


class EvaluateAction(BrowserAction):
    action_type = "playwright:evaluate"
    schema = EvaluateSchema

    async def run(self, params: EvaluateSchema, frame: ExecutionFrame) -> str:
        result = await self.page(frame).evaluate(params.expression)
        if params.save_as:
            frame.variables.set_runtime(params.save_as, result, params.scope)
        return f"Successfully evaluated expression, result: {result}"


# ==================== Output ====================

class ScreenshotSchema(ActionSchema):
    path: Optional[str] = None
    r2_key: Optional[str] = None
    full_page: bool = False


class ScreenshotAction(BrowserAction):
    action_type = "playwright:screenshot"
    schema = ScreenshotSchema

    async def run(self, params: ScreenshotSchema, frame: ExecutionFrame) -> str:
        storage = frame.run.storage
        if storage is None:
            raise BrowserError(f"{self.action_type} requires a storage service",
                               action_type=self.action_type)

        data = await self.page(frame).screenshot(full_page=params.full_page)

        key = params.r2_key or params.path or frame.run.resolver.resolve_string(
            DEFAULT_SCREENSHOT_PATH, frame.variables, frame.run.config
        )
        url = await storage.upload_file(key, data, "image/png")
        frame.emit_output_file(url)
        return f"Successfully took screenshot and uploaded to {url}"


class LogSchema(ActionSchema):
    message: str
    level: Literal["debug", "info", "warn", "warning", "error"] = "info"


class LogAction(PluginAction):
    """Writes a message into the run log. Needs no page."""

    action_type = "playwright:log"
    schema = LogSchema

    async def run(self, params: LogSchema, frame: ExecutionFrame) -> str:
        level = "warning" if params.level == "warn" else params.level
        getattr(frame.run.logger, level)("automation_log", message=params.message,
                                         action_id=frame.action_id)
        return f"[{params.level.upper()}] {params.message}"


BROWSER_ACTIONS: list[type[PluginAction]] = [
    GotoAction,
    ClickAction,
    FillAction,
    TypeAction,
    PressAction,
    CheckAction,
    UncheckAction,
    SelectOptionAction,
    WaitForSelectorAction,
    WaitForTimeoutAction,
    ScreenshotAction,
    EvaluateAction,
    HoverAction,
    ScrollAction,
    GetTextAction,
    GetAttributeAction,
    WaitForLoadStateAction,
    SetViewportAction,
    ReloadAction,
    GoBackAction,
    GoForwardAction,
    LogAction,
]
