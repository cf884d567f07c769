"""常量定义：集中维护状态码、角色与存储相关的固定取值。"""

HTTP_STATUS_OK = 200
HTTP_STATUS_BAD_REQUEST = 400
HTTP_STATUS_UNAUTHORIZED = 401
HTTP_STATUS_FORBIDDEN = 403
HTTP_STATUS_NOT_FOUND = 404
HTTP_STATUS_CONFLICT = 409

ACCESS_TOKEN_TYPE = "bearer"

ADMIN_ROLE = "admin"
USER_ROLE = "user"

# 对象 key 前缀：projects/{项目名}/{目录路径}/{随机前缀}_v{版本}_{文件名}
BLOB_KEY_ROOT = "projects"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# 临时上传直链的用途标识（LOCAL 存储通过服务端代理写入）
UPLOAD_TOKEN_PURPOSE = "blob_upload"
# 上传完成登记凭证：把对象 key 与申请时的判定结果绑定在一起
COMMIT_TOKEN_PURPOSE = "upload_commit"

SEARCH_RESULT_LIMIT = 20
# 祖先链回溯的安全深度，防止异常数据形成环导致死循环
MAX_FOLDER_DEPTH = 64
