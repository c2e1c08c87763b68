import pytest

from palaver.git import GitError, GitRepo, is_git_repository


def test_is_git_repository(temp_repo, tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()

    assert is_git_repository(temp_repo)
    assert not is_git_repository(plain)
    assert not is_git_repository(tmp_path / "missing")


def test_not_a_repository_raises(tmp_path):
    with pytest.raises(GitError, match="Not a git repository"):
        GitRepo(str(tmp_path))


def test_status_reports_staged_and_untracked(temp_repo):
    (temp_repo / "src" / "app.py").write_text("def main():\n    return 'bye'\n")
    (temp_repo / "todo.txt").write_text("x\n")
    repo = GitRepo(str(temp_repo))
    repo._run(["add", "src/app.py"], "stage file")

    status = repo.get_status()

    assert status["branch"] == "main"
    assert status["staged"] == ["src/app.py"]
    assert status["unstaged"] == []
    assert status["untracked"] == ["todo.txt"]
    assert "return 'bye'" in repo.get_diff(staged=True)


def test_create_existing_branch_fails(temp_repo):
    repo = GitRepo(str(temp_repo))

    with pytest.raises(GitError, match="Failed to create branch"):
        repo.create_branch("main")


def test_recent_commits(temp_repo):
    commits = GitRepo(str(temp_repo)).recent_commits(limit=1)

    assert len(commits) == 1
    assert commits[0]["message"] == "Initial commit"
    assert commits[0]["author"] == "Dev"
    assert len(commits[0]["hash"]) == 40
