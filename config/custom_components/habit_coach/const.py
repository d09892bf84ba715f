DOMAIN = "habit_coach"
HC_UPDATE_SIGNAL = "habit_coach_update"
HC_AI_UPDATE_SIGNAL = "habit_coach_ai_update"

DATA_DIR_NAME = "habit_coach_data"

# Config entry keys
CONF_LIGHT_SENSOR = "light_sensor"
CONF_TEMPERATURE_SENSOR = "temperature_sensor"
CONF_ACCELEROMETER_SENSOR = "accelerometer_sensor"
CONF_BATTERY_SENSOR = "battery_sensor"
CONF_LOCATION_TRACKER = "location_tracker"
CONF_WORK_ZONE = "work_zone"

CONTEXT_REFRESH_MINUTES = 15 # Clock-derived context slots are recomputed at this interval

# ==================== CONTEXT FEATURES ====================

NUM_FEATURES = 10
FEATURE_TIME_OF_DAY = 0
FEATURE_DAY_OF_WEEK = 1
FEATURE_ACTIVITY_LEVEL = 2
FEATURE_LIGHT_LEVEL = 3
FEATURE_TEMPERATURE = 4
FEATURE_WEATHER = 5
FEATURE_LOCATION_HOME = 6
FEATURE_LOCATION_WORK = 7
FEATURE_BATTERY_LEVEL = 8
FEATURE_DEVICE_USAGE = 9

FEATURE_NAMES = [
    "time_of_day",
    "day_of_week",
    "activity_level",
    "light_level",
    "temperature",
    "weather",
    "location_home",
    "location_work",
    "battery_level",
    "device_usage",
]

MAX_LIGHT_LUX = 10000.0
TEMPERATURE_OFFSET_C = 20.0 # -20°C maps to 0
TEMPERATURE_RANGE_C = 60.0 # 40°C maps to 1
MAX_ACCELERATION = 20.0 # m/s²
PROXIMITY_RADIUS_M = 1000.0

SEASON_FACTORS = {
    "spring": 0.7,
    "summer": 0.9,
    "fall": 0.6,
    "winter": 0.3,
}
WEATHER_SEASON_WEIGHT = 0.6
WEATHER_TEMPERATURE_WEIGHT = 0.4

# (upper bound in °C, factor); last entry catches everything above
TEMPERATURE_FACTORS = [
    (0, 0.2),
    (10, 0.4),
    (20, 0.7),
    (30, 0.9),
    (None, 0.5),
]

# (hour upper bound, usage level)
DEVICE_USAGE_BY_HOUR = [
    (6, 0.1),
    (9, 0.6),
    (17, 0.8),
    (23, 0.7),
    (None, 0.3),
]
DEVICE_USAGE_JITTER = 0.1
BATTERY_ESTIMATE_JITTER = 0.05

# ==================== REINFORCEMENT LEARNING ====================

LEARNING_RATE = 0.1
GAMMA = 0.9 # Discount factor
EXPLORATION_RATE_INITIAL = 0.9
EXPLORATION_RATE_MIN = 0.1
EXPLORATION_DECAY = 0.995

TIME_BUCKETS = 8 # 3-hour buckets
DAY_BUCKETS = 7
STREAK_BUCKETS = 5
CONTEXT_BUCKETS = 3
NUM_ACTIONS = 7

STREAK_TIERS = [0, 3, 7, 14] # streak <= tier -> bucket index
GAP_TIERS_HOURS = [12, 24, 48, 72] # gap <= tier -> action tier index
ACTIVITY_LOW = 0.3
ACTIVITY_MEDIUM = 0.7
DEFAULT_MOOD = 3
DEFAULT_CONTEXT_BUCKET = 1

REWARD_CADENCE_BONUS = 10.0
REWARD_CADENCE_PENALTY = -5.0
REWARD_CONSISTENCY_BONUS = 5.0
CONSISTENCY_HOURS = 2

# Maximum days between completions that still count as keeping the cadence
CADENCE_DAYS = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
}

# ==================== ANOMALY DETECTION ====================

MIN_COMPLETIONS_FOR_DETECTION = 5
Z_SCORE_THRESHOLD = 2.5
PATTERN_ANOMALY_THRESHOLD = 0.6
PATTERN_DISTANCE_SCALE = 5.0
PATTERN_JITTER = 0.2

# Nominal cadence used in frequency anomaly descriptions
EXPECTED_GAP_DAYS = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
}

# ==================== HYPERPARAMETER SEARCH ====================

LEARNING_RATE_SPACE = [0.001, 0.005, 0.01, 0.05, 0.1]
HIDDEN_LAYER_SIZE_SPACE = [4, 8, 16, 32, 64]
NUM_HIDDEN_LAYERS_SPACE = [1, 2, 3]
BATCH_SIZE_SPACE = [8, 16, 32, 64]
DROPOUT_RATE_SPACE = [0.0, 0.1, 0.2, 0.3, 0.5]

NUM_TRIALS = 10
RANDOM_TRIALS = 5
SEARCH_EXPLORATION_RATE = 0.3
TOP_CONFIGS = 3
MAX_PERTURB_ATTEMPTS = 50
MIN_TRIALS_FOR_IMPORTANCE = 5
TRIAL_TIMEOUT_SECONDS = 300

# ==================== COMPRESSION ====================

QUANTIZATION_LEVELS = 255
PRUNING_SPARSITY = 0.7
DISTILL_WEIGHT_RANGE = 0.1

# ==================== FEDERATED LEARNING ====================

FEDERATED_DIR = "federated"
EXPORT_DIR = "exports"
IMPORT_DIR = "imports"
AGGREGATED_DIR = "aggregated"
MODELS_DIR = "models"
MODEL_FILE_SUFFIX = ".weights"
FILE_IO_TIMEOUT_SECONDS = 30

# ==================== A/B TESTING ====================

VARIANT_CONTROL = "control"
VARIANT_SMALL = "small_network"
VARIANT_LARGE = "large_network"
VARIANT_DEEP = "deep_network"
VARIANT_WIDE = "wide_network"

# variant -> (input size, hidden layers, output size, learning rate)
NETWORK_ARCHITECTURES = {
    VARIANT_CONTROL: (10, [8], 3, 0.01),
    VARIANT_SMALL: (10, [6], 3, 0.01),
    VARIANT_LARGE: (10, [12], 3, 0.01),
    VARIANT_DEEP: (10, [8, 8], 3, 0.01),
    VARIANT_WIDE: (10, [16], 3, 0.01),
}

KEY_USER_GROUP = "user_group"
KEY_MODEL_VARIANT = "model_variant"
KEY_TEST_RESULTS_PREFIX = "test_results_"
KEY_AGENT_STATE = "rl_agent"
KEY_CATEGORY_MODELS = "category_models"
