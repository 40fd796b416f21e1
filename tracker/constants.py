CODEFORCES = 'codeforces'
LEETCODE = 'leetcode'
CODECHEF = 'codechef'
ATCODER = 'atcoder'
CODOLIO = 'codolio'
GITHUB = 'github'

PLATFORM_CHOICES = [
    (CODEFORCES, 'Codeforces'),
    (LEETCODE, 'LeetCode'),
    (CODECHEF, 'CodeChef'),
    (ATCODER, 'AtCoder'),
    (CODOLIO, 'Codolio'),
    (GITHUB, 'GitHub'),
]
PLATFORMS = [value for value, _label in PLATFORM_CHOICES]

FETCH_SUCCESS = 'success'
FETCH_FAILED = 'failed'
FETCH_PARTIAL = 'partial'
FETCH_PENDING = 'pending'
FETCH_UNSUPPORTED = 'unsupported'
FETCH_STATUS_CHOICES = [
    (FETCH_SUCCESS, 'Success'),
    (FETCH_FAILED, 'Failed'),
    (FETCH_PARTIAL, 'Partial'),
    (FETCH_PENDING, 'Pending'),
    (FETCH_UNSUPPORTED, 'Unsupported'),
]

LEVEL_HIGH = 'high'
LEVEL_MEDIUM = 'medium'
LEVEL_LOW = 'low'
PERFORMANCE_LEVEL_CHOICES = [
    (LEVEL_HIGH, 'High'),
    (LEVEL_MEDIUM, 'Medium'),
    (LEVEL_LOW, 'Low'),
]

TREND_UP = 'up'
TREND_DOWN = 'down'
TREND_STABLE = 'stable'

ERROR_VALIDATION = 'validation'
ERROR_PROCESSING = 'processing'
ERROR_API = 'api'
ERROR_DATABASE = 'database'
ERROR_SYSTEM = 'system'
ERROR_TYPE_CHOICES = [
    (ERROR_VALIDATION, 'Validation'),
    (ERROR_PROCESSING, 'Processing'),
    (ERROR_API, 'API'),
    (ERROR_DATABASE, 'Database'),
    (ERROR_SYSTEM, 'System'),
]
