from pathlib import Path

import pytest

from relayci.cache import CacheStore
from relayci.executor import ExecutionContext, JobExecutor
from relayci.scheduler import Scheduler
from relayci.settings import Settings


# Shape of the pipeline this project was first pointed at: two setup jobs,
# five jobs fanning out of install_rust, shared anchors and cache commands.
# Tool invocations are replaced by plain shell.
PIPELINE_DOCUMENT = """
version: 2.1
orbs:
  rust: circleci/rust@1.6.0
node: &node
  working_directory: ~/project
  docker:
  - image: cimg/node:current
  resource_class: medium
default: &default
  working_directory: ~/project
  docker:
  - image: cimg/rust:1.61
  environment:
    CARGO_TERM_COLOR: always
    RUSTFLAGS: '-D warnings'

commands:
  restore_cargo_cache:
    steps:
    - restore_cache:
        name: Restoring cargo registry cache
        keys:
          - cargo-lock-v2-{{ checksum "Cargo.lock" }}
          - cargo-lock-v2-
  save_cargo_cache:
    steps:
    - save_cache:
        name: Saving cargo cache
        key: cargo-lock-v2-{{ checksum "Cargo.lock" }}
        paths:
          - registry

jobs:
  setup:
    <<: *node
    steps:
    - checkout
    - run:
        name: Install dependencies
        command: mkdir -p node_modules && echo ok > node_modules/marker
    - persist_to_workspace:
        root: ~/project
        paths:
        - node_modules
  install_rust:
    <<: *default
    steps:
    - checkout
    - restore_cargo_cache
    - run:
        name: Download dependencies
        command: mkdir -p registry && echo crate > registry/index
    - save_cargo_cache
  lint_commit_message:
    <<: *node
    steps:
    - checkout
    - attach_workspace:
        at: ~/project
    - run:
        name: Lint commit message
        command: test -f node_modules/marker
  test:
    <<: *default
    steps:
    - checkout
    - run: echo "$RUSTFLAGS"
  format:
    <<: *default
    steps:
    - run: "true"
  clippy:
    <<: *default
    steps:
    - run: "true"
  build:
    <<: *default
    steps:
    - run: "true"

workflows:
  version: 2
  commit:
    jobs:
    - setup
    - install_rust
    - lint_commit_message: { requires: [setup] }
    - test: { requires: [install_rust] }
    - format: { requires: [install_rust] }
    - clippy: { requires: [install_rust] }
    - build: { requires: [install_rust] }
"""


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    (src / "Cargo.lock").write_text("serde = 1.0\n")
    (src / "README").write_text("hello\n")
    return src


@pytest.fixture
def home_dir(tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def settings(tmp_path: Path, source_dir: Path) -> Settings:
    return Settings(
        workers=4,
        source_dir=source_dir,
        work_dir=tmp_path / "work",
        cache_dir=tmp_path / "cache",
        kill_grace=0.5,
    )


@pytest.fixture
def cache_store(settings: Settings) -> CacheStore:
    return CacheStore.local(settings.cache_dir)


@pytest.fixture
def executor(settings: Settings, cache_store: CacheStore, home_dir: Path) -> JobExecutor:
    return JobExecutor(settings, cache_store, home=home_dir)


@pytest.fixture
def ctx(tmp_path: Path) -> ExecutionContext:
    workspace = tmp_path / "work" / "run" / ".workspace"
    workspace.mkdir(parents=True)
    return ExecutionContext(run_id="run", work_root=tmp_path / "work" / "run", workspace=workspace)


@pytest.fixture
def scheduler(settings: Settings, executor: JobExecutor):
    s = Scheduler(settings, executor=executor)
    yield s
    s.shutdown(wait=False)
