"""
auth.py - Xác thực Google cho BigQuery
=======================================
Thứ tự ưu tiên:
  1. BQ_CREDENTIALS_JSON   - chuỗi JSON (service account hoặc authorized user)
  2. BQ_CLIENT_EMAIL + BQ_PRIVATE_KEY - service account qua biến môi trường
  3. OAuth2 trên trình duyệt (credentials/client_secret.json),
     token lưu tại ./credentials/token.json để tái sử dụng
  4. None → để google-cloud-bigquery tự dùng Application Default Credentials
"""

import os
import json

from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from google.auth.transport.requests import Request

# Scopes cần thiết cho BigQuery
SCOPES = [
    "https://www.googleapis.com/auth/bigquery",
    "https://www.googleapis.com/auth/cloud-platform",
]

# Paths
CREDS_DIR = os.path.join(os.path.dirname(__file__), "credentials")
TOKEN_PATH = os.path.join(CREDS_DIR, "token.json")
CLIENT_SECRET_PATH = os.path.join(CREDS_DIR, "client_secret.json")


def credentials_from_env():
    """Credentials từ biến môi trường, hoặc None nếu không có."""
    creds_json = os.environ.get("BQ_CREDENTIALS_JSON")
    if creds_json:
        info = json.loads(creds_json)
        if info.get("type") == "service_account":
            return service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        return Credentials.from_authorized_user_info(info, SCOPES)

    client_email = os.environ.get("BQ_CLIENT_EMAIL")
    private_key = os.environ.get("BQ_PRIVATE_KEY")
    if client_email and private_key:
        info = {
            "type": "service_account",
            "client_email": client_email,
            # Vercel/.env lưu private key dạng 1 dòng với '\n' escape
            "private_key": private_key.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }
        return service_account.Credentials.from_service_account_info(info, scopes=SCOPES)

    return None


def oauth_credentials() -> Credentials:
    """
    Lấy credentials đã lưu hoặc chạy OAuth2 flow mới.

    Yêu cầu: File credentials/client_secret.json (OAuth 2.0 Client ID từ GCP Console).
    """
    creds = None

    # Kiểm tra token đã lưu
    if os.path.exists(TOKEN_PATH):
        creds = Credentials.from_authorized_user_file(TOKEN_PATH, SCOPES)

    # Refresh hoặc tạo mới
    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            print("  🔄 Đang refresh token...")
            creds.refresh(Request())
        else:
            print("  🌐 Mở trình duyệt để đăng nhập Google...")
            flow = InstalledAppFlow.from_client_secrets_file(
                CLIENT_SECRET_PATH, SCOPES
            )
            creds = flow.run_local_server(port=0)

        # Lưu token
        os.makedirs(CREDS_DIR, exist_ok=True)
        with open(TOKEN_PATH, "w") as f:
            f.write(creds.to_json())
        print("  ✅ Đã lưu token xác thực")

    return creds


def get_credentials():
    """Credentials theo thứ tự ưu tiên ở đầu file; None → ADC."""
    creds = credentials_from_env()
    if creds is not None:
        return creds
    if os.path.exists(TOKEN_PATH) or os.path.exists(CLIENT_SECRET_PATH):
        return oauth_credentials()
    return None
