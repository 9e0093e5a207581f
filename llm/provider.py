"""LlmProvider: one adapter bound to a lazily created SDK client and a conversation buffer."""

from dataclasses import replace
from typing import Iterator

from utils.logger import get_logger
from utils.secrets import get_env_secret
from .base import BaseProviderAdapter, OperateOptions, StreamChunk
from .errors import ConfigurationError
from .operate import OperateLoop
from .response import OperateResponse
from .stream import StreamLoop

logger = get_logger(__name__)


def _merge_options(options: OperateOptions | None, overrides: dict) -> OperateOptions:
    if options is None:
        return OperateOptions(**overrides)
    return replace(options, **overrides) if overrides else options


class LlmProvider:
    """Runs operate calls against one vendor.

    The SDK client is built on first use from ``api_key`` or, failing that,
    the secret resolver.  Successive ``operate`` calls continue the same
    conversation; ``clear_history`` starts over.  One instance must not be
    used by concurrent calls.
    """

    def __init__(
        self,
        adapter: BaseProviderAdapter,
        model: str | None = None,
        api_key: str | None = None,
        secret_resolver=None,
        hook_runner=None,
        retry_policy=None,
        sleep=None,
    ):
        self.adapter = adapter
        self.model = model or adapter.default_model
        self.history: list = []
        self._api_key = api_key
        self._secret_resolver = secret_resolver or get_env_secret
        self._client = None
        self._hook_runner = hook_runner
        self._retry_policy = retry_policy
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.adapter.name

    def get_client(self):
        """Return the cached SDK client, creating it on first use.

        Raises:
            ConfigurationError: No API key could be resolved
        """
        if self._client is None:
            api_key = self._api_key or self._secret_resolver(self.adapter.api_key_env)
            if not api_key:
                raise ConfigurationError(
                    f"The application could not resolve the requested keys: {self.adapter.api_key_env}"
                )
            self._client = self.adapter.create_client(api_key)
            logger.trace(f"Initialized {self.adapter.name} client")
        return self._client

    def _loop(self, loop_class=OperateLoop):
        return loop_class(
            self.adapter,
            self.get_client(),
            hook_runner=self._hook_runner,
            retry_policy=self._retry_policy,
            sleep=self._sleep,
        )

    def _with_history(self, options: OperateOptions | None, overrides: dict) -> OperateOptions:
        options = _merge_options(options, overrides)
        history = list(self.history) + list(options.history or [])
        return replace(options, model=options.model or self.model, history=history or None)

    def operate(self, input, options: OperateOptions | None = None, **kwargs) -> OperateResponse:
        """Run the operate loop, continuing this instance's conversation.

        Keyword arguments override fields of ``options``.
        """
        response = self._loop().execute(input, self._with_history(options, kwargs))
        self.history = list(response.history)
        return response

    def stream(self, input, options: OperateOptions | None = None, **kwargs) -> Iterator[StreamChunk]:
        """Stream a loop that continues this instance's conversation.

        Instance history is sent first, as in ``operate``, but streaming does
        not add to it.
        """
        yield from self._loop(StreamLoop).execute(input, self._with_history(options, kwargs))

    def send(self, message, options: OperateOptions | None = None, **kwargs):
        """Single turn without tools or instance history; returns the content."""
        options = _merge_options(options, kwargs)
        options = replace(options, model=options.model or self.model, tools=None, turns=False)
        return self._loop().execute(message, options).content

    def clear_history(self) -> None:
        self.history = []
