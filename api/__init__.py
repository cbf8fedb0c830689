"""
HTTP 層（FastAPI routers）

只負責 request / response 轉換與錯誤對應，不含業務邏輯：
- rooms：建立房間、加入 / 離開、活動紀錄
- transactions：交易查詢、上傳證明、確認收貨
- arbiter：GM 審核、放款、取消 / 爭議
"""
