"""
Kline Response Shaper

Converts AggregatedCandles into the chart payload returned by /api/kline.

    candleData      premium OHLC points            always present
    volumeData      premium (combined) volume      always present
    ex1VolumeData   domestic group volume          only if the domestic group has data
    ex2VolumeData   foreign group volume           only if the foreign group has data
    usdtCandleData  reference series closes        only if the reference fetch returned data

Optional series are left as None and excluded when the response is serialized
(FastAPI route uses response_model_exclude_none=True).
"""

from typing import List, Sequence

from core.schemas import AggregatedCandles, Candle, CandlePoint, KlineResponse, ValuePoint


def _volume_points(candles: Sequence[Candle]) -> List[ValuePoint]:
    return [ValuePoint(time=c.timestamp, value=c.volume) for c in candles]


def to_kline_response(result: AggregatedCandles) -> KlineResponse:
    """
    Shape aggregator output for the chart.

    Example:
        >>> response = to_kline_response(result)
        >>> response.model_dump(by_alias=True, exclude_none=True).keys()
        dict_keys(['candleData', 'volumeData', 'ex2VolumeData'])
    """
    candle_data = [
        CandlePoint(time=p.timestamp, open=p.open, high=p.high, low=p.low, close=p.close)
        for p in result.premium
    ]
    volume_data = [ValuePoint(time=p.timestamp, value=p.volume) for p in result.premium]

    return KlineResponse(
        candle_data=candle_data,
        volume_data=volume_data,
        ex1_volume_data=_volume_points(result.domestic) if result.domestic else None,
        ex2_volume_data=_volume_points(result.foreign) if result.foreign else None,
        usdt_candle_data=(
            [ValuePoint(time=c.timestamp, value=c.close) for c in result.reference]
            if result.reference else None
        )
    )
