import json

HEADERS = ["Name", "Email", "Amount", "Notes"]
ROWS = [
    {"Name": "Alice", "Email": "a@example.com", "Amount": "$10", "Notes": ""},
    {"Name": "Bob", "Email": "b@example.com", "Amount": "$5", "Notes": ""},
    {"Name": "Bob", "Email": "b@example.com", "Amount": "$5", "Notes": ""},
]


def testDataQualityEndpoint(client, authHeaders):
    """目的: /data-quality が camelCase の品質サマリを返すことを確認する。"""
    response = client.post("/data-quality", json={"headers": HEADERS, "rows": ROWS}, headers=authHeaders)

    assert response.status_code == 200
    body = response.json()
    assert body["totalRows"] == 3
    assert body["duplicateCount"] == 1
    assert body["lowValueColumns"] == ["Notes"]


def testGenerateSummaryEndpoint(client, authHeaders, fakeLlm):
    """目的: /generate-summary がLLMの分類結果を検証済みの形で返すことを確認する。"""
    fakeLlm.classification = json.dumps(
        {
            "summary": "Customer payments",
            "emailColumns": ["Email"],
            "currencyColumns": [{"name": "Amount", "currency": "USD"}],
            "modifiedHeaders": ["Name", "Email", "Amount (USD)", "Notes"],
        }
    )

    response = client.post("/generate-summary", json={"headers": HEADERS, "rows": ROWS}, headers=authHeaders)

    assert response.status_code == 200
    assert response.json() == {
        "summary": "Customer payments",
        "emailColumns": ["Email"],
        "currencyColumns": [{"name": "Amount", "currency": "USD"}],
        "modifiedHeaders": ["Name", "Email", "Amount (USD)", "Notes"],
    }


def testGenerateSummaryRequiresHeadersAndRows(client, authHeaders, fakeLlm):
    """目的: ヘッダや行が無い場合は 400 を返し、LLMは呼ばないことを確認する。"""
    response = client.post("/generate-summary", json={"rows": ROWS}, headers=authHeaders)

    assert response.status_code == 400
    assert response.json() == {"detail": "Missing headers or rows"}
    assert fakeLlm.calls == []


def testGenerateSummaryRequiresAuthentication(client, fakeLlm):
    """目的: 未認証ではLLMを呼ばずに 401 を返すことを確認する。"""
    response = client.post("/generate-summary", json={"headers": HEADERS, "rows": ROWS})

    assert response.status_code == 401
    assert fakeLlm.calls == []


def testPreprocessEndpoint(client, authHeaders):
    """目的: /preprocess が整形後のデータ・品質サマリ・実施内容を返すことを確認する。"""
    response = client.post(
        "/preprocess",
        json={
            "headers": HEADERS,
            "rows": ROWS,
            "emailColumns": ["Email"],
            "currencyColumns": [{"name": "Amount", "currency": "USD"}],
        },
        headers=authHeaders,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["headers"] == ["Name", "Amount"]
    assert body["rows"] == [{"Name": "Alice", "Amount": 10}, {"Name": "Bob", "Amount": 5}]
    assert body["summary"]["duplicateCount"] == 0
    assert body["report"] == {
        "removedPiiColumns": ["Email"],
        "cleanedCurrencyColumns": ["Amount"],
        "removedLowValueColumns": ["Notes"],
        "removedDuplicateRows": 1,
    }
    assert "Removed 1 duplicate rows" in body["steps"]


def testPreprocessEndpointKeepsOverflowingNumbersAsText(client, authHeaders):
    """目的: inf になる数値を含んでも /preprocess は 200 で JSON を返すことを確認する。"""
    response = client.post(
        "/preprocess",
        json={"headers": ["a"], "rows": [{"a": "1e999"}, {"a": "2"}]},
        headers=authHeaders,
    )

    assert response.status_code == 200
    assert response.json()["rows"] == [{"a": "1e999"}, {"a": 2}]
