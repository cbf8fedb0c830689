"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- 狀態機：集中管理所有交易狀態轉換
- Manager：管理 Room 的生命週期與 buyer / seller slot
- Gateway：證明檔案上傳與 GM 審核
- Fund Release：放款授權
- Events：commit 之後才發出的事件
- Locks：並發控制工具
"""
