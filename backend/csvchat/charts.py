from decimal import Decimal

CHART_TYPES = ("bar", "line", "pie", "area")
CHART_MAX_ROWS = 50


def _is_number(value) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def normalize_chart_data(rows, chart_config, *, max_rows: int = CHART_MAX_ROWS) -> dict | None:
    """
    目的: LLMが指定した軸名を実際の結果列名へ合わせ、グラフ描画用の {config, data} を返す。

    - 先頭 max_rows 行に切り詰める
    - xAxis/yAxis は大文字小文字を無視して実在の列名へ解決する（見つからなければそのまま）
    - pie で軸が未指定なら、最初の文字列列をカテゴリ・最初の数値列を値にする
      （該当が無ければ1列目/2列目）
    対象外（行が無い・設定が無い）の場合は None。
    """
    if not isinstance(chart_config, dict) or not isinstance(rows, list) or not rows:
        return None

    data = rows[:max_rows]
    first = data[0] if isinstance(data[0], dict) else {}
    keys = list(first.keys())
    lower_key_map = {k.lower(): k for k in keys}

    config = dict(chart_config)
    for axis in ("xAxis", "yAxis", "groupBy"):
        name = config.get(axis)
        if isinstance(name, str) and name:
            config[axis] = lower_key_map.get(name.lower(), name)

    if config.get("type") == "pie":
        if not config.get("xAxis"):
            config["xAxis"] = next((k for k in keys if isinstance(first[k], str)), keys[0] if keys else None)
        if not config.get("yAxis"):
            config["yAxis"] = next(
                (k for k in keys if _is_number(first[k])), keys[1] if len(keys) > 1 else None
            )

    return {"config": config, "data": data}
