from conftest import makeToken

from csvchat.auth import decode_user_token
from csvchat.config import AuthConfig


def testRequestsWithoutTokenAreRejected(client):
    """目的: Authorization ヘッダが無いリクエストは 401 になることを確認する。"""
    response = client.get("/folders")

    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}


def testTokenSignedWithOtherSecretIsRejected(client):
    """目的: 署名が一致しないトークンは 401 になることを確認する。"""
    token = makeToken(secret="another-secret")

    response = client.get("/folders", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def testDecodeUserTokenReadsSubjectAndEmail():
    """目的: JWT の sub を利用者ID、email をメールアドレスとして読み取ることを確認する。"""
    config = AuthConfig(jwt_secret="test-secret", jwt_algorithm="HS256", jwt_audience=None)

    user = decode_user_token(makeToken("abc", secret="test-secret"), config)

    assert user.id == "abc"
    assert user.email == "abc@example.com"


def testDecodeUserTokenRequiresConfiguredSecret():
    """目的: 署名鍵が未設定ならトークンを受け付けないことを確認する。"""
    config = AuthConfig(jwt_secret=None, jwt_algorithm="HS256", jwt_audience=None)

    assert decode_user_token(makeToken(secret="test-secret"), config) is None
