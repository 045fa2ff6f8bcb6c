from typing import Dict

from .config import Settings
from .errors import ConfigurationError
from .sandbox import RunnerStrategy
from .schemas import Language


class StrategySelector:
    """Chooses native or sandboxed execution per language from configuration."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._native = set()
        for name in settings.native_languages:
            # unknown names fail at startup rather than on the first submission
            try:
                self._native.add(Language.parse(name))
            except ValueError as e:
                raise ConfigurationError(f'JUDGE_NATIVE_LANGUAGES: {e}')

    def strategy_for(self, language: Language) -> RunnerStrategy:
        if self._settings.use_native or language in self._native:
            return RunnerStrategy.NATIVE
        return RunnerStrategy.SANDBOXED

    def describe(self) -> Dict[str, str]:
        return {lang.value: self.strategy_for(lang).value for lang in Language}
