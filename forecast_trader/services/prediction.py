"""Price forecasting port and the default river-backed model."""

from __future__ import annotations

import asyncio
import math
from typing import Callable, Dict, Optional, Protocol, Sequence, runtime_checkable

from river import compose, linear_model, optim, preprocessing

from forecast_trader.services.errors import PredictionError
from forecast_trader.services.logging import get_logger
from forecast_trader.services.types import Forecast, PriceWindow

FeatureMapping = Dict[str, float]


@runtime_checkable
class PriceModel(Protocol):
    def predict(self, closes: Sequence[float]) -> float: ...


@runtime_checkable
class WindowFittable(Protocol):
    def fit_window(self, closes: Sequence[float]) -> None: ...


class WindowRegressor:
    """Predict the next close from the previous ``window_size`` closes.

    Features and target are returns relative to the most recent close, so the
    same weights apply across price scales. ``fit_window`` rebuilds the
    pipeline from scratch on the one-step-ahead pairs of a history.
    """

    def __init__(
        self,
        window_size: int = 10,
        *,
        learning_rate: float = 0.01,
        regularization: float = 0.0005,
        epochs: int = 3,
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self._window_size = int(window_size)
        self._learning_rate = float(learning_rate)
        self._regularization = float(regularization)
        self._epochs = max(1, int(epochs))
        self._pipeline: Optional[compose.Pipeline] = None
        self._samples = 0

    @property
    def window_size(self) -> int:
        return self._window_size

    @property
    def samples(self) -> int:
        return self._samples

    def _build_pipeline(self) -> compose.Pipeline:
        return compose.Pipeline(
            preprocessing.StandardScaler(),
            linear_model.LinearRegression(
                optimizer=optim.SGD(self._learning_rate),
                l2=self._regularization,
            ),
        )

    def _features(self, closes: Sequence[float]) -> FeatureMapping:
        anchor = float(closes[-1])
        return {f"lag_{index}": float(value) / anchor - 1.0 for index, value in enumerate(closes)}

    def fit_window(self, closes: Sequence[float]) -> None:
        history = [float(value) for value in closes]
        pipeline = self._build_pipeline()
        samples = 0
        for _ in range(self._epochs):
            for end in range(self._window_size, len(history)):
                lags = history[end - self._window_size : end]
                target = history[end] / lags[-1] - 1.0
                pipeline.learn_one(self._features(lags), target)
                samples += 1
        self._pipeline = pipeline
        self._samples = samples

    def predict(self, closes: Sequence[float]) -> float:
        if len(closes) != self._window_size:
            raise ValueError(f"expected {self._window_size} closes, received {len(closes)}")
        if self._pipeline is None:
            raise RuntimeError("model has not been fitted")
        predicted_return = float(self._pipeline.predict_one(self._features(closes)))
        return float(closes[-1]) * (1.0 + predicted_return)


class PredictionPort:
    """Run the price model off the event loop and validate its output.

    Each symbol gets its own model instance from ``model_factory`` so no model
    state is shared between concurrently analysed symbols.
    """

    def __init__(
        self,
        model_factory: Callable[[], PriceModel],
        *,
        window_size: int = 10,
        fit_on_history: bool = True,
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self._model_factory = model_factory
        self._window_size = int(window_size)
        self._fit_on_history = fit_on_history
        self._models: Dict[str, PriceModel] = {}
        self._logger = get_logger(__name__)

    @property
    def window_size(self) -> int:
        return self._window_size

    def model_for(self, symbol: str) -> PriceModel:
        model = self._models.get(symbol)
        if model is None:
            model = self._model_factory()
            self._models[symbol] = model
        return model

    async def predict(self, window: PriceWindow) -> Forecast:
        symbol = window.symbol
        if len(window) < self._window_size:
            raise PredictionError(
                symbol, f"window holds {len(window)} closes, model needs {self._window_size}"
            )
        model = self.model_for(symbol)
        inputs = list(window.tail(self._window_size))
        try:
            predicted = await asyncio.to_thread(self._run_model, model, window.closes, inputs)
        except Exception as exc:  # noqa: BLE001 - model internals are opaque
            raise PredictionError(symbol, f"model failed: {exc}") from exc
        if predicted is None or not math.isfinite(predicted) or predicted <= 0.0:
            raise PredictionError(symbol, f"model returned unusable price {predicted!r}")
        self._logger.debug(
            "Forecast for %s: %.8f (last close %.8f)", symbol, predicted, window.last_close
        )
        return Forecast(predicted_price=predicted, window=window)

    def _run_model(
        self, model: PriceModel, history: Sequence[float], inputs: Sequence[float]
    ) -> float | None:
        if self._fit_on_history and isinstance(model, WindowFittable):
            model.fit_window(history)
        raw = model.predict(inputs)
        return float(raw) if raw is not None else None


__all__ = ["PredictionPort", "PriceModel", "WindowFittable", "WindowRegressor"]
