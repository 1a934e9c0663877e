# -*- coding: utf-8 -*-
"""
Popula o banco com dados de demonstração: catálogo de conquistas, um
superadmin, um docente, dois alunos, um simulado de Língua Portuguesa com
questões nos três níveis de dificuldade e uma turma.

Uso: python seed.py  (requer DATABASE_URL configurada, como o app)
"""
import logging

from werkzeug.security import generate_password_hash

from main import app, db, sincronizar_conquistas, gerar_codigo_turma, \
    Usuario, Simulado, Questao, Alternativa, Turma, TurmaAluno
from tipos import Role, StatusSimulado, Dificuldade, TipoQuestao

logger = logging.getLogger('seed')

SENHA_PADRAO = 'senha123'

USUARIOS = [
    {'nome': 'Administrador', 'email': 'admin@simulados.com', 'role': Role.SUPERADMIN},
    {'nome': 'Thaísa', 'email': 'thaisa@simulados.com', 'role': Role.DOCENTE},
    {'nome': 'Ana Souza', 'email': 'ana@simulados.com', 'role': Role.ALUNO},
    {'nome': 'Bruno Lima', 'email': 'bruno@simulados.com', 'role': Role.ALUNO},
]

# --- DADOS DAS QUESTÕES ---
# (dificuldade, tag, enunciado, alternativas, índice da correta, explicação)
QUESTOES_MULTIPLA_ESCOLHA = [
    # FÁCIL
    ('FACIL', 'tempos verbais',
     'Qual forma verbal preenche corretamente a lacuna? "Se eu ______ mais tempo, teria ido ao cinema."',
     ['tivesse', 'teria', 'tinha', 'tenho'], 0,
     'A hipótese não realizada pede o pretérito imperfeito do subjuntivo.'),
    ('FACIL', 'ortografia', 'Assinale a palavra grafada corretamente.',
     ['excessão', 'exceção', 'esceção', 'excesão'], 1, 'O substantivo correto é "exceção".'),
    ('FACIL', 'acentuação', 'Qual palavra deve receber acento gráfico?',
     ['caju', 'item', 'juri', 'tatu'], 2, '"Júri" é paroxítona terminada em "i".'),
    ('FACIL', 'classes de palavras', 'Em "Ela correu rapidamente", a palavra "rapidamente" é:',
     ['adjetivo', 'advérbio', 'substantivo', 'preposição'], 1, 'Modifica o verbo indicando modo.'),
    ('FACIL', 'plural', 'Qual é o plural de "cidadão"?',
     ['cidadões', 'cidadães', 'cidadãos', 'cidadons'], 2, 'O plural de "cidadão" é "cidadãos".'),
    ('FACIL', 'sinônimos', 'Qual palavra é sinônimo de "efêmero"?',
     ['duradouro', 'passageiro', 'eterno', 'constante'], 1, '"Efêmero" é o que dura pouco.'),
    ('FACIL', 'concordância', 'Assinale a frase com concordância nominal correta.',
     ['É proibido a entrada.', 'É proibida entrada.', 'É proibido entrada.', 'São proibido entradas.'], 2,
     'Sem determinante, a expressão fica invariável.'),
    ('FACIL', 'ortografia', 'Complete: "Não sei ______ ele faltou."',
     ['porque', 'por que', 'porquê', 'por quê'], 1, 'Em interrogativa indireta usa-se "por que".'),
    ('FACIL', 'classes de palavras', 'Em "Comprei três livros", "três" é um:',
     ['numeral', 'pronome', 'artigo', 'advérbio'], 0, 'Indica quantidade exata.'),
    ('FACIL', 'antônimos', 'Qual é o antônimo de "escasso"?',
     ['raro', 'pouco', 'abundante', 'limitado'], 2, '"Abundante" opõe-se a "escasso".'),
    # MÉDIO
    ('MEDIO', 'crase', 'Assinale a alternativa em que o uso da crase está correto.',
     ['Vou à pé.', 'Refiro-me à você.', 'Chegamos à uma conclusão.', 'Fomos à feira.'], 3,
     '"Ir a" + artigo "a" de "feira".'),
    ('MEDIO', 'regência', 'Assinale a regência verbal correta.',
     ['Assisti o filme.', 'Prefiro café do que chá.', 'Obedeça aos pais.', 'Namoro com ela.'], 2,
     '"Obedecer" é transitivo indireto.'),
    ('MEDIO', 'pontuação', 'Em qual frase a vírgula está empregada corretamente?',
     ['Os alunos, fizeram a prova.', 'Maria, venha aqui.', 'O livro que li, é ótimo.', 'Ele disse, que viria.'], 1,
     'Vírgula isolando vocativo.'),
    ('MEDIO', 'concordância', 'Assinale a concordância verbal correta.',
     ['Fazem dois anos.', 'Houveram problemas.', 'Faz dois anos.', 'Haviam alunos.'], 2,
     '"Fazer" indicando tempo é impessoal.'),
    ('MEDIO', 'colocação pronominal', 'Assinale a colocação pronominal correta.',
     ['Me empresta o livro?', 'Não incomode-me.', 'Nunca o vi.', 'Tinha visto-o.'], 2,
     'Advérbio de negação atrai o pronome.'),
    ('MEDIO', 'vozes verbais', 'Em "O bolo foi feito pela avó", a voz verbal é:',
     ['ativa', 'passiva analítica', 'passiva sintética', 'reflexiva'], 1, 'Ser + particípio + agente.'),
    ('MEDIO', 'figuras de linguagem', '"Seus olhos são duas estrelas" é exemplo de:',
     ['metáfora', 'comparação', 'hipérbole', 'ironia'], 0, 'Comparação implícita, sem conectivo.'),
    ('MEDIO', 'tempos verbais', 'Em "Quando cheguei, ela já jantara", "jantara" está no:',
     ['pretérito perfeito', 'pretérito imperfeito', 'pretérito mais-que-perfeito', 'futuro do pretérito'], 2,
     'Ação anterior a outra ação passada.'),
    ('MEDIO', 'sintaxe', 'Em "Choveu muito ontem", o sujeito é:',
     ['simples', 'oculto', 'indeterminado', 'inexistente'], 3, 'Verbos de fenômeno natural não têm sujeito.'),
    ('MEDIO', 'acentuação', 'Qual palavra perdeu o acento com o Novo Acordo Ortográfico?',
     ['ideia', 'café', 'saúde', 'país'], 0, 'Ditongos abertos em paroxítonas não levam mais acento.'),
    # DIFÍCIL
    ('DIFICIL', 'sintaxe', 'Em "Necessita-se de professores", o sujeito é:',
     ['simples', 'indeterminado', 'oculto', 'inexistente'], 1, 'VTI + "se" indica sujeito indeterminado.'),
    ('DIFICIL', 'regência', 'Assinale a frase que segue a norma culta quanto à regência.',
     ['O cargo que aspiro é alto.', 'O cargo a que aspiro é alto.', 'O cargo cujo aspiro é alto.',
      'O cargo onde aspiro é alto.'], 1, '"Aspirar" no sentido de almejar exige "a".'),
    ('DIFICIL', 'crase', 'Em qual caso a crase é facultativa?',
     ['Entreguei à diretora.', 'Fui à minha casa.', 'Saímos às pressas.', 'Dirigiu-se à Bahia.'], 1,
     'Antes de pronome possessivo feminino a crase é facultativa.'),
    ('DIFICIL', 'orações', 'Em "É preciso que estudes", a oração destacada é subordinada substantiva:',
     ['objetiva direta', 'subjetiva', 'predicativa', 'apositiva'], 1, 'Funciona como sujeito de "é preciso".'),
    ('DIFICIL', 'concordância', 'Assinale a alternativa correta.',
     ['Seguem anexo as cópias.', 'Seguem anexas as cópias.', 'Segue anexas as cópias.',
      'Seguem anexos as cópias.'], 1, '"Anexo" concorda com o substantivo.'),
    ('DIFICIL', 'pontuação', 'Qual frase exige vírgula por deslocamento de adjunto adverbial longo?',
     ['Ontem saí cedo.', 'No fim da tarde de domingo os alunos saíram.', 'Saí cedo ontem.', 'Eles saíram.'], 1,
     'Adjunto adverbial longo deslocado deve ser isolado.'),
    ('DIFICIL', 'figuras de linguagem', '"Li Machado de Assis nas férias" é exemplo de:',
     ['metonímia', 'metáfora', 'antítese', 'eufemismo'], 0, 'Autor pela obra.'),
    ('DIFICIL', 'colocação pronominal', 'Assinale a mesóclise correta.',
     ['Dir-lhe-ei a verdade.', 'Direi-lhe a verdade.', 'Lhe direi a verdade.', 'Dir-ei-lhe a verdade.'], 0,
     'Futuro do presente sem fator de próclise pede mesóclise.'),
    ('DIFICIL', 'vozes verbais', 'Em "Alugam-se casas", a voz verbal é:',
     ['ativa', 'passiva analítica', 'passiva sintética', 'reflexiva recíproca'], 2,
     'VTD + "se" apassivador.'),
    ('DIFICIL', 'semântica', 'Em "Ele é um homem grande" e "Ele é um grande homem", a posição do adjetivo altera:',
     ['apenas a sonoridade', 'o sentido', 'a concordância', 'a regência'], 1,
     'Anteposto, "grande" assume sentido figurado.'),
]

QUESTOES_INTERATIVAS = [
    {
        'tipo': TipoQuestao.LACUNA, 'dificuldade': 'MEDIO', 'tags': ['tempos verbais'],
        'enunciado': 'Complete as lacunas com os verbos no tempo correto.',
        'configuracao': {
            'texto': 'Se ele [LACUNA_1] mais cedo, não [LACUNA_2] atrasado.',
            'lacunas': [
                {'id': 'l1', 'respostasAceitas': ['saísse']},
                {'id': 'l2', 'respostasAceitas': ['chegaria', 'teria chegado']},
            ],
        },
    },
    {
        'tipo': TipoQuestao.ORDENACAO, 'dificuldade': 'FACIL', 'tags': ['sintaxe'],
        'enunciado': 'Ordene os termos para formar a frase "O aluno entregou a prova".',
        'alternativas': ['O aluno', 'entregou', 'a prova'],
    },
]


def find_or_create(modelo, defaults=None, **filtros):
    """Retorna (objeto, criado) procurando pelos filtros informados."""
    objeto = modelo.query.filter_by(**filtros).first()
    if objeto is not None:
        logger.info("Encontrado '%s' com %s", modelo.__name__, filtros)
        return objeto, False

    logger.info("Criando '%s' com %s", modelo.__name__, filtros)
    objeto = modelo(**filtros, **(defaults or {}))
    db.session.add(objeto)
    db.session.flush()
    return objeto, True


def criar_usuarios():
    usuarios = {}
    for dados in USUARIOS:
        usuario, _ = find_or_create(
            Usuario, email=dados['email'],
            defaults={'nome': dados['nome'], 'role': dados['role'],
                      'password': generate_password_hash(SENHA_PADRAO)},
        )
        usuarios[dados['email']] = usuario
    return usuarios


def criar_questoes(simulado):
    if simulado.questoes:
        logger.info('Simulado "%s" já possui questões; nada a inserir.', simulado.nome)
        return 0

    ordem = 0
    for dificuldade, tag, enunciado, alternativas, correta, explicacao in QUESTOES_MULTIPLA_ESCOLHA:
        ordem += 1
        questao = Questao(simulado_id=simulado.id, enunciado=enunciado, tipo=TipoQuestao.MULTIPLA_ESCOLHA_UNICA,
                          dificuldade=Dificuldade(dificuldade), tags=[tag], explicacao=explicacao, ordem=ordem)
        questao.alternativas = [Alternativa(texto=texto, correta=(i == correta), ordem=i)
                                for i, texto in enumerate(alternativas)]
        db.session.add(questao)

    for dados in QUESTOES_INTERATIVAS:
        ordem += 1
        questao = Questao(simulado_id=simulado.id, enunciado=dados['enunciado'], tipo=dados['tipo'],
                          dificuldade=Dificuldade(dados['dificuldade']), tags=dados['tags'],
                          configuracao=dados.get('configuracao'), ordem=ordem)
        questao.alternativas = [Alternativa(texto=texto, ordem=i) for i, texto in enumerate(dados.get('alternativas', []))]
        db.session.add(questao)
    return ordem


def run_seed():
    logger.info('Iniciando o seeding do banco de dados...')
    db.create_all()
    sincronizar_conquistas()

    usuarios = criar_usuarios()
    docente = usuarios['thaisa@simulados.com']

    simulado, _ = find_or_create(
        Simulado, nome='Língua Portuguesa - Gramática', docente_id=docente.id,
        defaults={'categoria': 'Português', 'subcategoria': 'Gramática', 'status': StatusSimulado.ATIVO,
                  'descricao': 'Banco de questões de gramática para concursos e vestibulares.'},
    )
    inseridas = criar_questoes(simulado)

    turma, _ = find_or_create(
        Turma, nome='Turma de Português 2026', docente_id=docente.id,
        defaults={'codigo': gerar_codigo_turma(), 'descricao': 'Turma de demonstração.'},
    )
    for usuario in usuarios.values():
        if usuario.role == Role.ALUNO:
            find_or_create(TurmaAluno, turma_id=turma.id, aluno_id=usuario.id)

    db.session.commit()
    logger.info('Seeding concluído: %s novas questões; código da turma: %s', inseridas, turma.codigo)
    logger.info('Usuários de demonstração usam a senha "%s".', SENHA_PADRAO)


# Ponto de entrada para executar o script
if __name__ == '__main__':
    with app.app_context():
        run_seed()
