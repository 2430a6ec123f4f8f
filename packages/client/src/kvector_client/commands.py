"""Server command names.

The transport forwards these unchanged; only AUTHENTICATE, USE_SPACE and
PING have meaning to the connection layer itself.
"""

# Session
AUTHENTICATE = "authenticate"
PING = "ping"
USE_SPACE = "useSpace"

# Spaces
CREATE_SPACE = "createSpace"
DROP_SPACE = "dropSpace"
LIST_SPACES = "listSpaces"
DESCRIBE_SPACE = "describeSpace"

# Key-value
PUT = "put"
GET = "get"
DELETE = "delete"

# Vectors
INSERT_VECTOR = "insertVector"
SEARCH_TOPK = "searchTopk"
SEARCH_RANGE = "searchRange"
GET_VECTOR = "getVector"
DELETE_VECTOR = "deleteVector"

# Users
CREATE_USER = "createUser"
DROP_USER = "dropUser"
CHANGE_PASSWORD = "changePassword"
LIST_USERS = "listUsers"

DEFAULT_INDEX_TYPE = "Flat"
DEFAULT_METRIC = "L2"
DEFAULT_TOPK = 1
