"""
服務層

這個 package 包含純計算或單一職責的工具，不負責狀態轉換：
- AuditService：只能新增的稽核紀錄
- EvidenceStore：證明檔案的儲存
- ProgressService：交易進度與下一步動作
- FeeService：金額計算
- NamingService：編號與 token 生成
- HistoryService：房間活動紀錄、交易摘要
"""
