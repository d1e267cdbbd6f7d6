"""
Fixed Timeouts - 固定逾時與間隔
可調整的部分放在 Settings，這裡只放不對外開放的常數（秒）
"""

# Readiness 檢查的資料庫 ping 上限
READINESS_CHECK_TIMEOUT = 3.0

# healthcheck CLI 等待 /readyz 的上限
HEALTHCHECK_TIMEOUT = 5.0

# webhook 被暖機擋下時建議的重試秒數
WEBHOOK_RETRY_AFTER = 60

# 全域限流拒絕時建議的重試秒數
GLOBAL_LIMIT_RETRY_AFTER = 1

# 貼圖來源最多重試次數與單次 HEAD 檢查逾時
STICKER_FETCH_RETRIES = 3
UPSTREAM_HEAD_TIMEOUT = 10.0

# 每學期課程分頁大小上限（避免一次載入過多）
MAX_PAGE_SIZE = 1000

# 學號模組掃描的學年範圍
ID_FIRST_YEAR = 101
ID_LAST_YEAR = 113

# 暖機選課學期數與 BM25 預設搜尋學期數
WARMUP_SEMESTER_COUNT = 4
SEARCH_SEMESTER_COUNT = 2

# 學期偵測最多往回檢查幾個候選學期
SEMESTER_CHECK_LIMIT = 8

# 聊天請求中即時抓取的重試次數（背景暖機用 Settings.SCRAPER_MAX_RETRIES）
REQUEST_MAX_RETRIES = 1
