# eth_testbench_core/config.py
"""
Default configuration values for the eth-testbench core library.
These can be overridden by passing keyword arguments to the individual components.
"""

# --- Chain / Client Communication ---
DEFAULT_TARGET_URL: str = "http://127.0.0.1:8545"  # Default RPC endpoint for broadcast targets
DEFAULT_CHAIN_ID: int = 31337                      # Chain ID of the local simulator
DEFAULT_RPC_TIMEOUT_SECONDS: float = 10.0

# --- Block Environment ---
DEFAULT_BLOCK_NUMBER: int = 1
DEFAULT_BLOCK_TIMESTAMP: int = 1
DEFAULT_BLOCK_GAS_LIMIT: int = 30_000_000
DEFAULT_BASE_FEE: int = 0
DEFAULT_PRIORITY_FEE: int = 1_000_000_000          # 1 gwei tip used when committing transactions
DEFAULT_COINBASE: str = "0x0000000000000000000000000000000000000000"
DEFAULT_PREVRANDAO: int = 0

# --- Execution ---
DEFAULT_CALL_GAS_LIMIT: int = 30_000_000           # Gas limit of a single test call
MAX_CALL_DEPTH: int = 1024
MAX_STACK_SIZE: int = 1024
MAX_CODE_SIZE: int = 24576
MAX_MEMORY_BYTES: int = 1 << 32                    # Anything larger is treated as out of gas

# --- Well-known addresses (same values as Foundry, so artifacts behave identically) ---
CHEAT_ADDRESS: str = "0x7109709ECfa91a80626fF3989D68f67F5b1DD12D"
DEFAULT_SENDER: str = "0x1804c8AB1F12E6bbf3894d4083f33e07309d1f38"
DEFAULT_TEST_CONTRACT_ADDRESS: str = "0x7FA9385bE102ac3EAc297483Dd6233D62b3e1496"
DEFAULT_TEST_CONTRACT_BALANCE: int = 2**96 - 1
DEFAULT_SENDER_BALANCE: int = 2**96 - 1

# --- Test Discovery ---
TEST_PREFIX: str = "test"
EXPECT_FAIL_PREFIX: str = "testFail"
FIXTURE_NAME: str = "setUp"

# --- Fuzzing ---
DEFAULT_FUZZ_RUNS: int = 256                       # Cases drawn per fuzz test
DEFAULT_FUZZ_SEED: int = 0x5EED
DEFAULT_SHRINK_STEP_BUDGET: int = 512              # Executions spent on shrinking one failure
DEFAULT_MAX_REJECTS: int = 65536                   # assume(false) rejections tolerated per test
DEFAULT_FUZZ_WORKERS: int = 1                      # Threads executing cases of one fuzz test
DEFAULT_MAX_DYNAMIC_LENGTH: int = 32               # Max length for drawn bytes/strings/arrays
DEFAULT_BOUNDARY_DRAW_PROBABILITY: float = 0.1     # Chance a random draw picks a boundary value
DEFAULT_CORPUS_DIR: str = "cache/fuzz"

# --- Test Orchestration ---
DEFAULT_TEST_WORKERS: int = 1                      # Threads executing tests of one group
DEFAULT_GLOBAL_TIMEOUT_SECONDS: float = 3600.0     # 1 hour run-wide timeout

# --- Broadcast ---
DEFAULT_GAS_ESTIMATE_MULTIPLIER: float = 1.3       # Margin applied to dry-run gas usage
DEFAULT_KEY_FILE_PRIMARY: str = './keys.csv'       # Primary CSV file for private keys
DEFAULT_KEY_FILE_SECONDARY: str = './keys.local.csv'
MAX_ACCOUNTS_TO_LOAD: int = 100                    # Safety limit for the number of signer keys to load

# --- Logging ---
LOG_LEVEL: str = "INFO"
LOG_TO_FILE: bool = False
LOG_FILE_PATH: str = "testbench.log"
LOG_JSON_FORMAT: bool = False
